#!/usr/bin/env python3
"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptlisting - timestamp-free normalization of `ls -AlnR` output

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import difflib
import re
from typing import List, Optional

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

# ls -l columns: [permissions] [links] [uid] [gid] [size] time... [name]
FIRST_TIME_FIELD = 6
SYMLINK_ARROW    = "->"
TOTAL_FIELD      = "total"
FIELD_SEPARATOR  = re.compile(r"[ \t]+")


def normalize_line(line: str) -> Optional[str]:
    """
    Blank the timestamp fields of one `ls -l` line.

    Device ls has no --time-style, so the timestamp spans a variable number
    of fields. Symlink lines end in "name -> target", which moves the end of
    the timestamp three fields from the end instead of one. "total" lines are
    dropped (block usage differs between filesystems). Lines without a
    timestamp are returned untouched.
    """
    fields = [f for f in FIELD_SEPARATOR.split(line.strip(" \t")) if f]
    nf     = len(fields)
    end    = 3 if nf > 3 and fields[nf - 2] == SYMLINK_ARROW else 1

    blanked = False
    for i in range(FIRST_TIME_FIELD, nf - end + 1):
        fields[i - 1] = ""
        blanked = True

    if fields and fields[0] == TOTAL_FIELD:
        return None
    return " ".join(fields) if blanked else line


def normalize_listing(text: str) -> str:
    """Normalize a full recursive listing, line by line."""
    lines = (normalize_line(line) for line in text.splitlines())
    return "\n".join(line for line in lines if line is not None)


def listing_diff(expected: str, actual: str,
                 expected_name: str = "mnt", actual_name: str = "dump") -> List[str]:
    return list(difflib.unified_diff(expected.splitlines(), actual.splitlines(),
                                     fromfile=expected_name, tofile=actual_name,
                                     lineterm=""))
