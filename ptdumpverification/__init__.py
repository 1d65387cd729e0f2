"""
    ptdumpverification - dump.f2fs versus mount equivalence checks on Android devices
"""

from ._version import __version__
