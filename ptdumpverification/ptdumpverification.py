#!/usr/bin/env python3
"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptdumpverification - dump.f2fs versus mount equivalence check on Android devices

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import argparse
import logging
import os
import re
import sys
from pathlib import Path, PurePosixPath
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from ._version import __version__
from .ptdevice import AdbDevice, CommandResult, DEFAULT_ADB, DEFAULT_TIMEOUT
from .ptlisting import normalize_listing, listing_diff

from ptlibs import ptjsonlib, ptprinthelper
from ptlibs.ptprinthelper import ptprint

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

SCRIPTNAME         = "ptdumpverification"
DEFAULT_OUTPUT_DIR = "/var/forensics/dumpverify"
DEFAULT_LOG_DIR    = "/var/log/forensics"
DEFAULT_WORKDIR    = "/data/local/tmp/efs_test"
DEFAULT_PARTITIONS = ["efs", "efs_backup", "modem_userdata", "persist"]
BLOCK_BY_NAME      = "/dev/block/by-name"
REQUIRED_PAGE_SIZE = "4096"
SAFE_NAME_RE       = re.compile(r"^[A-Za-z0-9_.-]+$")

# Listing: [permissions] [links] [uid] [gid] [size] time [name/symlink]
LS_COMMAND   = "cd {directory};ls -AlnR ."
DIFF_COMMAND = "diff -rq --no-dereference {mnt} {dump}"

STATUS_EXIT_CODES: Dict[str, int] = {"PASSED": 0, "SKIPPED": 0, "FAILED": 1}


def is_safe_name(name: str) -> bool:
    """Names are interpolated unquoted into root shell commands on the device."""
    return bool(SAFE_NAME_RE.match(name)) and name not in (".", "..")


# ---------------------------------------------------------------------------
# MAIN CLASS
# ---------------------------------------------------------------------------

class PtDumpVerification:
    """
    dump.f2fs equivalence check – ptlibs compliant.

    Per partition:
      1. cp        raw partition → <name>.img
      2. fsck      fsck.f2fs -f, repair to a stable state
      3. mount rw  then umount, so mount-time fixes reach the image
      4. dump      dump.f2fs -rfPLo into dump/
      5. mount ro  image onto mnt/
      6. diff      diff -rq --no-dereference mnt dump, must be silent
      7. listing   normalized ls -AlnR of both trees must match
      8. cleanup   umount, empty dump/, delete image

    First failed check ends the run. Devices without 4 KiB pages are skipped.
    """

    def __init__(self, args: argparse.Namespace, device: Optional[AdbDevice] = None) -> None:
        self.ptjsonlib  = ptjsonlib.PtJsonLib()
        self.args       = args
        self.serial     = args.serial
        self.dry_run    = args.dry_run
        self.partitions = list(args.partitions)
        self.output_dir = Path(args.output_dir)

        invalid = [p for p in self.partitions if not is_safe_name(p)]
        if invalid:
            self.ptjsonlib.end_error(f"Invalid partition name: {', '.join(invalid)}", args.json)
            sys.exit(99)

        self.workdir = PurePosixPath(args.workdir)
        parts = self.workdir.parts[1:]
        if not self.workdir.is_absolute() or not parts or not all(is_safe_name(p) for p in parts):
            self.ptjsonlib.end_error(f"Invalid device work directory: {args.workdir}", args.json)
            sys.exit(99)
        self.mnt  = self.workdir / "mnt"
        self.dump = self.workdir / "dump"

        self.logger = self._setup_logger()
        self.device = device or AdbDevice(self.serial, adb=args.adb, timeout=args.timeout,
                                          dry_run=self.dry_run, logger=self.logger)
        self.last_failure: Optional[Dict[str, Any]] = None

        self.ptjsonlib.add_properties({
            "serial":             self.serial,
            "workdir":            str(self.workdir),
            "partitions":         self.partitions,
            "timestamp":          datetime.now(timezone.utc).isoformat(),
            "scriptVersion":      __version__,
            "pageSize":           None,
            "status":             None,
            "partitionsVerified": [],
            "failedPartition":    None,
            "dryRun":             self.dry_run,
        })

        ptprint(f"Initialized: serial={self.serial or 'default'}, workdir={self.workdir}",
                "INFO", condition=not self.args.quiet)

    # --- setup --------------------------------------------------------------

    def _setup_logger(self) -> logging.Logger:
        log_dir = Path(self.args.log_dir)
        if not self.dry_run:
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                log_dir = Path("/tmp/forensics")
                log_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger(f"dump_verification.{id(self)}")
        logger.setLevel(logging.DEBUG)
        if not self.dry_run:
            fh = logging.FileHandler(log_dir / f"dump_verification_{datetime.now().strftime('%Y%m%d')}.log")
            fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
            logger.addHandler(fh)
        if (self.args.verbose or self.dry_run) and not self.args.json:
            logger.addHandler(logging.StreamHandler())
        return logger

    # --- helpers ------------------------------------------------------------

    def image_path(self, name: str) -> PurePosixPath:
        return self.workdir / f"{name}.img"

    def _add_node(self, node_type: str, success: bool, **kwargs) -> None:
        """Append a result node to the JSON output."""
        self.ptjsonlib.add_node(self.ptjsonlib.create_node_object(
            node_type,
            properties={"success": success, **kwargs},
        ))

    def _shell(self, command: str) -> str:
        """Unchecked command: output only, result is never asserted."""
        out = self.device.execute_shell_command(command)
        self.logger.debug(f"[{command}] → {out!r}")
        return out

    def _fail(self, name: str, step: str, command: Any, reason: str,
              r: Optional[CommandResult] = None, **kwargs) -> bool:
        self.last_failure = {"partition": name, "step": step, "command": command,
                             "reason": reason, **kwargs}
        if r is not None:
            self.last_failure.update({"returnCode": r.exit_code, "stdout": r.stdout,
                                      "stderr": r.stderr})
        self.logger.error(f"{name}: {step} failed – {reason}")
        ptprint(f"{step}: FAILED – {reason}", "ERROR", condition=not self.args.quiet)
        self._add_node("verificationStep", False, **self.last_failure)
        return False

    def _check(self, name: str, step: str, command: str, expect_silent: bool = False) -> bool:
        """Checked command: exit code 0 required, optionally with empty stdout."""
        r = self.device.execute_shell_v2_command(command)
        if not r.success:
            return self._fail(name, step, command, f"exit code {r.exit_code}", r)
        if expect_silent and r.stdout != "":
            return self._fail(name, step, command, "unexpected output", r)

        ptprint(f"{step}: OK", "OK", condition=not self.args.quiet)
        self._add_node("verificationStep", True, partition=name, step=step,
                       command=command, returnCode=r.exit_code)
        return True

    def _listing(self, name: str, directory: PurePosixPath) -> Optional[str]:
        command = LS_COMMAND.format(directory=directory)
        r = self.device.execute_shell_v2_command(command)
        if not r.success:
            self._fail(name, "listing", command, f"exit code {r.exit_code}", r)
            return None
        return normalize_listing(r.stdout)

    # --- steps --------------------------------------------------------------

    def set_up(self) -> None:
        """Gain root and recreate an empty scratch tree. Errors propagate."""
        ptprint("\nSetup", "TITLE", condition=not self.args.quiet)
        self.device.enable_adb_root()
        self._shell(f"rm -rf {self.workdir}")
        self._shell(f"mkdir -p {self.mnt}")
        self._shell(f"mkdir -p {self.dump}")
        self._add_node("setup", True, workdir=str(self.workdir))

    def check_page_size(self) -> bool:
        """dump.f2fs output is only comparable on 4 KiB page kernels."""
        ptprint("\nPage Size Check", "TITLE", condition=not self.args.quiet)
        if self.dry_run:
            ptprint("Page size check bypassed in dry-run", "WARNING", condition=not self.args.quiet)
            return True

        page_size = self._shell("getconf PAGESIZE").strip()
        applicable = page_size == REQUIRED_PAGE_SIZE
        self.ptjsonlib.add_properties({"pageSize": page_size or None})
        self._add_node("pageSizeCheck", True, pageSize=page_size, applicable=applicable)

        if applicable:
            ptprint(f"Page size {page_size}", "OK", condition=not self.args.quiet)
        else:
            ptprint(f"Page size {page_size or 'unknown'} != {REQUIRED_PAGE_SIZE} – not applicable",
                    "WARNING", condition=not self.args.quiet)
        return applicable

    def verify_partition(self, name: str) -> bool:
        """Compare the mounted image of one partition with its dump.f2fs output."""
        ptprint(f"\nPartition: {name}", "TITLE", condition=not self.args.quiet)
        img = self.image_path(name)

        try:
            self._shell(f"cp {BLOCK_BY_NAME}/{name} {img}")

            # The partition was mounted r/w. fsck, then mount so that mount-time
            # fixes land in the image; dump and read-only mount must then agree.
            self._shell(f"fsck.f2fs -f {img}")
            if not self._check(name, "mount", f"mount {img} {self.mnt}"):
                return False
            if not self._check(name, "umount", f"umount {self.mnt}"):
                return False

            if not self._check(name, "dump", f"dump.f2fs -rfPLo {self.dump} {img}"):
                return False
            if not self._check(name, "mount read-only", f"mount -r {img} {self.mnt}"):
                return False

            if not self._check(name, "diff", DIFF_COMMAND.format(mnt=self.mnt, dump=self.dump),
                               expect_silent=True):
                return False

            mnt_ls = self._listing(name, self.mnt)
            if mnt_ls is None:
                return False
            dump_ls = self._listing(name, self.dump)
            if dump_ls is None:
                return False
            if mnt_ls != dump_ls:
                diff = listing_diff(mnt_ls, dump_ls)
                commands = [LS_COMMAND.format(directory=d) for d in (self.mnt, self.dump)]
                return self._fail(name, "listing", commands, "listings differ", listingDiff=diff)

            ptprint("listing: OK", "OK", condition=not self.args.quiet)
            self._add_node("verificationStep", True, partition=name, step="listing",
                           entries=len(mnt_ls.splitlines()))
            return True
        finally:
            self._shell(f"umount {self.mnt}")
            self._shell(f"rm -rf {self.dump}")
            self._shell(f"mkdir -p {self.dump}")
            self._shell(f"rm {img}")

    def tear_down(self) -> None:
        """Best effort: nothing here is asserted."""
        ptprint("\nTeardown", "TITLE", condition=not self.args.quiet)
        try:
            self._shell(f"umount {self.mnt}")
            self._shell(f"rm -rf {self.workdir}")
        except Exception as exc:
            self.logger.warning(f"Teardown error ignored: {exc}")

    # --- run & save ---------------------------------------------------------

    def verify_all(self) -> bool:
        """Verify partitions in order, stopping at the first failure."""
        verified: List[str] = []
        for name in self.partitions:
            if not self.verify_partition(name):
                self.ptjsonlib.add_properties({"partitionsVerified": verified,
                                               "failedPartition": name})
                return False
            verified.append(name)
            self.ptjsonlib.add_properties({"partitionsVerified": list(verified)})
        return True

    def run(self) -> None:
        """Execute setup, the page-size guard, every partition and teardown."""
        ptprint("=" * 70, "TITLE", condition=not self.args.quiet)
        ptprint(f"DUMP VERIFICATION v{__version__} | Device: {self.serial or 'default'} | "
                f"Partitions: {', '.join(self.partitions)}", "TITLE", condition=not self.args.quiet)
        if self.dry_run:
            ptprint("MODE: DRY-RUN", "WARNING", condition=not self.args.quiet)
        ptprint("=" * 70, "TITLE", condition=not self.args.quiet)

        try:
            self.set_up()
            if not self.check_page_size():
                status = "SKIPPED"
            else:
                status = "PASSED" if self.verify_all() else "FAILED"
        finally:
            self.tear_down()

        self.ptjsonlib.add_properties({"status": status})
        self.ptjsonlib.set_status("finished")

        ptprint("\n" + "=" * 70, "TITLE", condition=not self.args.quiet)
        if status == "PASSED":
            ptprint("DUMP VERIFICATION PASSED", "OK", condition=not self.args.quiet)
        elif status == "SKIPPED":
            ptprint("DUMP VERIFICATION SKIPPED – page size not supported",
                    "WARNING", condition=not self.args.quiet)
        else:
            failure = self.last_failure or {}
            ptprint(f"DUMP VERIFICATION FAILED – {failure.get('partition')}: "
                    f"{failure.get('step')} ({failure.get('reason')})",
                    "ERROR", condition=not self.args.quiet)
        ptprint("=" * 70, "TITLE", condition=not self.args.quiet)

    def save_report(self) -> Optional[str]:
        """Output JSON report to stdout (--json) or to file."""
        if self.args.json:
            ptprint(self.ptjsonlib.get_result_json(), "", self.args.json)
            return None

        self.output_dir.mkdir(parents=True, exist_ok=True)
        safe    = "".join(c if c.isalnum() or c in "-_" else "_" for c in (self.serial or "device"))
        outfile = self.output_dir / f"{safe}_dump_verification_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        outfile.write_text(self.ptjsonlib.get_result_json(), encoding="utf-8")
        ptprint(f"Report saved: {outfile}", "OK", condition=not self.args.quiet)
        return str(outfile)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def get_help() -> List[Dict]:
    return [
        {"description": ["dump.f2fs equivalence check – ptlibs compliant",
                         "Compares dump.f2fs output against a read-only mount of the same image"]},
        {"usage": ["ptdumpverification [options]"]},
        {"usage_example": ["ptdumpverification",
                           "ptdumpverification -s 0A171FDD4000F1 --json",
                           "ptdumpverification -p persist efs --dry-run"]},
        {"options": [
            ["-s", "--serial",     "<serial>", "Device serial (default: $ANDROID_SERIAL)"],
            ["-p", "--partitions", "<name>",   f"Partitions in order (default: {' '.join(DEFAULT_PARTITIONS)})"],
            ["-w", "--workdir",    "<dir>",    f"Scratch directory on device (default: {DEFAULT_WORKDIR})"],
            ["-o", "--output-dir", "<dir>",    f"Report directory (default: {DEFAULT_OUTPUT_DIR})"],
            ["--log-dir",          "<dir>",    f"Log directory (default: {DEFAULT_LOG_DIR})"],
            ["--adb",              "<path>",   f"adb binary (default: {DEFAULT_ADB})"],
            ["-t", "--timeout",    "<sec>",    f"Per-command timeout (default: {DEFAULT_TIMEOUT})"],
            ["-v", "--verbose",    "",         "Verbose logging"],
            ["--dry-run",          "",         "Print commands without touching the device"],
            ["-j", "--json",       "",         "JSON output for Penterep platform"],
            ["-q", "--quiet",      "",         "Suppress progress output"],
            ["-h", "--help",       "",         "Show help"],
            ["--version",          "",         "Show version"],
        ]},
        {"notes": [
            "Requires a rooted (userdebug/eng) device",
            "Devices without 4096 B pages are skipped, not failed",
            "The scratch directory is removed when the run ends",
        ]},
    ]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    argv = sys.argv[1:] if argv is None else argv

    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-s", "--serial",     default=os.environ.get("ANDROID_SERIAL"))
    parser.add_argument("-p", "--partitions", nargs="+", default=list(DEFAULT_PARTITIONS))
    parser.add_argument("-w", "--workdir",    default=DEFAULT_WORKDIR)
    parser.add_argument("-o", "--output-dir", default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--log-dir",          default=DEFAULT_LOG_DIR)
    parser.add_argument("--adb",              default=DEFAULT_ADB)
    parser.add_argument("-t", "--timeout",    type=int, default=DEFAULT_TIMEOUT)
    parser.add_argument("-v", "--verbose",    action="store_true")
    parser.add_argument("-q", "--quiet",      action="store_true")
    parser.add_argument("--dry-run",          action="store_true")
    parser.add_argument("-j", "--json",       action="store_true")
    parser.add_argument("--version", action="version", version=f"{SCRIPTNAME} {__version__}")
    parser.add_argument("--socket-address",   default=None)
    parser.add_argument("--socket-port",      default=None)
    parser.add_argument("--process-ident",    default=None)

    if {"-h", "--help"} & set(argv):
        ptprinthelper.help_print(get_help(), SCRIPTNAME, __version__)
        sys.exit(0)

    args = parser.parse_args(argv)
    if args.json:
        args.quiet = True
    ptprinthelper.print_banner(SCRIPTNAME, __version__, args.json)
    return args


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)

        tool = PtDumpVerification(args)
        tool.run()
        tool.save_report()

        status = tool.ptjsonlib.json_object["result"]["properties"]["status"]
        return STATUS_EXIT_CODES.get(status, 99)

    except KeyboardInterrupt:
        ptprint("Interrupted by user.", "WARNING", condition=True)
        return 130
    except Exception as exc:
        ptprint(f"ERROR: {exc}", "ERROR", condition=True)
        return 99


if __name__ == "__main__":
    sys.exit(main())
