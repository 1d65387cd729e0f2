#!/usr/bin/env python3
"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptdevice - adb command-execution facade for on-device verification tools

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

DEFAULT_ADB     = "adb"
DEFAULT_TIMEOUT = 600   # partition copies and dumps on slow storage
TIMEOUT_FAST    = 60    # adb root / wait-for-device


class AdbError(Exception):
    """Raised when the device cannot be reached or prepared."""


@dataclass
class CommandResult:
    exit_code: int
    stdout:    str = ""
    stderr:    str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class AdbDevice:
    """
    Blocking shell access to a single Android device through the adb binary.

    Two flavours are exposed:
      execute_shell_command    → stdout only, failures show up as empty output
      execute_shell_v2_command → CommandResult with exit code, stdout, stderr
    """

    def __init__(self, serial: Optional[str] = None, adb: str = DEFAULT_ADB,
                 timeout: int = DEFAULT_TIMEOUT, dry_run: bool = False,
                 logger: Optional[logging.Logger] = None) -> None:
        self.serial  = serial
        self.adb     = adb
        self.timeout = timeout
        self.dry_run = dry_run
        self.logger  = logger or logging.getLogger(__name__)

    def _adb_command(self, *args: str) -> List[str]:
        cmd = [self.adb]
        if self.serial:
            cmd += ["-s", self.serial]
        return cmd + list(args)

    def _run(self, cmd: List[str], timeout: int) -> CommandResult:
        if self.dry_run:
            self.logger.info(f"[DRY-RUN] {' '.join(cmd)}")
            return CommandResult(0)
        self.logger.debug(f"Executing: {' '.join(cmd)}")

        try:
            proc = subprocess.run(cmd, capture_output=True, text=True,
                                  timeout=timeout, check=False)
        except subprocess.TimeoutExpired:
            self.logger.error(f"Timeout after {timeout}s: {' '.join(cmd)}")
            return CommandResult(-1, stderr=f"Timeout after {timeout}s")
        except OSError as exc:
            self.logger.error(exc)
            return CommandResult(-1, stderr=str(exc))

        self.logger.debug(f"Exit code {proc.returncode}")
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)

    def execute_shell_command(self, command: str) -> str:
        """Run a device shell command and return its stripped stdout."""
        return self._run(self._adb_command("shell", command), self.timeout).stdout.strip()

    def execute_shell_v2_command(self, command: str) -> CommandResult:
        """Run a device shell command and return the exit code with both streams."""
        return self._run(self._adb_command("shell", command), self.timeout)

    def enable_adb_root(self) -> None:
        """Restart adbd as root and wait until the device answers as uid 0."""
        if self.dry_run:
            self.logger.debug("Dry-run: adb root skipped")
            return

        for args in (("root",), ("wait-for-device",)):
            try:
                proc = subprocess.run(self._adb_command(*args), capture_output=True,
                                      text=True, timeout=TIMEOUT_FAST, check=False)
            except FileNotFoundError as exc:
                raise AdbError(f"adb binary not found: {self.adb}") from exc
            except subprocess.TimeoutExpired as exc:
                raise AdbError(f"adb {args[0]} timed out after {TIMEOUT_FAST}s") from exc
            if proc.returncode != 0:
                raise AdbError(f"adb {args[0]} failed: {(proc.stderr or proc.stdout).strip()}")

        uid = self.execute_shell_command("id -u")
        if uid != "0":
            raise AdbError(f"Root not available on device (uid={uid or 'unknown'})")
        self.logger.info(f"adb root enabled on {self.serial or 'default device'}")
