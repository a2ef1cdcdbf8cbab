#!/usr/bin/env python3
"""
Subprocess wrapper shared by every resource driver.

Each command, its output and its exit status are written to the per-run log
file so a failed run can be diagnosed after the fact.
"""

import logging
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pxe_e2e.errors import CommandError


class CommandRunner:
    """Runs external commands and records them in a log file."""

    def __init__(self, log_file: Optional[Path] = None, dry_run: bool = False):
        self.log_file = Path(log_file) if log_file else None
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)
        self.history: List[List[str]] = []

    def _log_to_file(self, message: str):
        """Append timestamped log entry to the run log file."""
        if not self.log_file:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        with self.log_file.open('a', encoding='utf-8') as log_handle:
            log_handle.write(f"[{timestamp}] {message}\n")

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        """Run a command, capturing output in the run log."""
        cmd_str = ' '.join(cmd)
        self.history.append(list(cmd))
        self.logger.debug(f"Running command: {cmd_str}")
        self._log_to_file(f"Running command: {cmd_str}")

        if self.dry_run:
            self._log_to_file("Dry run: command not executed")
            return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input_text,
                cwd=str(cwd) if cwd else None,
            )
        except subprocess.TimeoutExpired as e:
            self._log_to_file(f"Command timed out after {timeout}s")
            raise CommandError(cmd, -1, stderr=f"timed out after {timeout}s") from e
        except FileNotFoundError as e:
            self._log_to_file(f"Command not found: {cmd[0]}")
            raise CommandError(cmd, 127, stderr=str(e)) from e

        if result.stdout:
            self._log_to_file(f"STDOUT:\n{result.stdout.strip()}")
        if result.stderr:
            self._log_to_file(f"STDERR:\n{result.stderr.strip()}")
        self._log_to_file(f"Command exited with {result.returncode}")

        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stdout, result.stderr)
        return result

    @staticmethod
    def which(binary: str) -> Optional[str]:
        return shutil.which(binary)
