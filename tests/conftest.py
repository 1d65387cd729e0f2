import os

import pytest

from ptdumpverification.ptdevice import CommandResult
from ptdumpverification.ptdumpverification import parse_args

WORKDIR = "/data/local/tmp/efs_test"

MNT_LISTING = """.:
total 16
drwxrwx--x 2 1000 1000 3452 2024-05-02 10:11 nv
-rw------- 1 0 0 512 2024-05-02 10:11 calib.bin
lrwxrwxrwx 1 0 0 9 2024-05-02 10:11 latest -> calib.bin

./nv:
total 4
-rw-rw---- 1 1001 1001 128 2024-05-02 10:11 item_0001"""

# Same tree as extracted by dump.f2fs: timestamps and totals differ.
DUMP_LISTING = """.:
total 24
drwxrwx--x 2 1000 1000 3452 2026-10-19 08:30 nv
-rw------- 1 0 0 512 2026-10-19 08:30 calib.bin
lrwxrwxrwx 1 0 0 9 2026-10-19 08:30 latest -> calib.bin

./nv:
total 8
-rw-rw---- 1 1001 1001 128 2026-10-19 08:30 item_0001"""


class FakeDevice:
    """Scripted stand-in for AdbDevice that records every command."""

    def __init__(self, page_size="4096", results=None, listings=None, root_error=None):
        self.page_size  = page_size
        self.results    = results or {}
        self.listings   = listings or {f"{WORKDIR}/mnt": MNT_LISTING,
                                       f"{WORKDIR}/dump": DUMP_LISTING}
        self.root_error = root_error
        self.commands   = []

    def enable_adb_root(self):
        self.commands.append("<adb root>")
        if self.root_error:
            raise self.root_error

    def execute_shell_command(self, command):
        self.commands.append(command)
        if command == "getconf PAGESIZE":
            return self.page_size
        return ""

    def execute_shell_v2_command(self, command):
        self.commands.append(command)
        for needle, result in self.results.items():
            if needle in command:
                return result
        if command.startswith("cd "):
            directory = command[3:].split(";")[0]
            return CommandResult(0, self.listings.get(directory, ""))
        return CommandResult(0)


def pytest_addoption(parser):
    parser.addoption("--serial", default=os.environ.get("ANDROID_SERIAL"),
                     help="serial of a rooted device for the on-device tests")


@pytest.fixture
def device_serial(request):
    serial = request.config.getoption("--serial")
    if not serial:
        pytest.skip("no device: pass --serial or set ANDROID_SERIAL")
    return serial


@pytest.fixture
def make_args(tmp_path):
    def _make_args(*extra):
        return parse_args(["-o", str(tmp_path / "reports"),
                           "--log-dir", str(tmp_path / "logs"),
                           "-q", *extra])
    return _make_args


@pytest.fixture
def fake_device():
    return FakeDevice()
