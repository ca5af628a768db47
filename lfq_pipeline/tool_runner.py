"""
Run OpenMS TOPP executables.

Every tool follows the same command line contract:

    <Tool> -write_ini <file>    write the default parameters and exit
    <Tool> -ini <file>          run with the given parameters

stdout and stderr are merged and read line by line while the tool runs.
OpenMS announces long phases with "Progress of '<phase>'" and then prints
percentages; those are forwarded to the status callback, every line is
kept in the debug log. Output still buffered when the tool exits is read
afterwards and logged at INFO.
"""
from __future__ import annotations

import os
import re
import time
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import ToolExitFailure, ToolLaunchFailure
from .utils import ensure_dir, format_elapsed

logger = logging.getLogger(__name__)

PROGRESS_RE = re.compile(r"Progress of '([^']*)'")


@dataclass
class ToolRunner:
    bin_dir: Path
    scratch_dir: Path
    share_name: str = "OpenMS"
    exe_suffix: str = ""
    status: Optional[Callable[[str], None]] = None

    def executable(self, tool: str) -> Path:
        exe = Path(self.bin_dir) / f"{tool}{self.exe_suffix}"
        if not exe.is_file():
            raise ToolLaunchFailure(tool, f"Executable for {tool} not found: {exe}")
        return exe

    def data_path(self, exe: Path) -> Path:
        """<exe dir>/../share/<share_name>, without following symlinks."""
        exe_dir = os.path.dirname(os.path.abspath(str(exe)))
        return Path(os.path.normpath(os.path.join(exe_dir, "..", "share", self.share_name)))

    def environment(self, exe: Path) -> dict:
        env = dict(os.environ)
        env["OPENMS_DATA_PATH"] = str(self.data_path(exe))
        return env

    def write_ini(self, tool: str, ini_path) -> None:
        self._execute(tool, ["-write_ini", str(ini_path)], f"Writing {tool} defaults")

    def run(self, tool: str, ini_path) -> None:
        self._execute(tool, ["-ini", str(ini_path)], f"Running {tool}")

    def _report(self, message: str) -> None:
        if self.status is not None:
            self.status(message)

    def _handle_line(self, tool: str, line: str, phase: Optional[str]) -> Optional[str]:
        line = line.rstrip("\r\n")
        if not line:
            return phase
        logger.debug("[%s] %s", tool, line)
        m = PROGRESS_RE.search(line)
        if m:
            return m.group(1)
        if phase is not None and "%" in line:
            self._report(f"{phase} {line.strip()}")
        return phase

    def _drain(self, tool: str, text: str, phase: Optional[str]) -> Optional[str]:
        """Output the tool printed after the last read; non-empty lines are logged at INFO."""
        for line in text.splitlines():
            if line.strip():
                logger.info("[%s] %s", tool, line.rstrip())
            phase = self._handle_line(tool, line, phase)
        return phase

    def _execute(self, tool: str, args: List[str], current_work: str) -> None:
        exe = self.executable(tool)
        cmd = [str(exe)] + args
        ensure_dir(self.scratch_dir)
        logger.debug("[CMD] %s", " ".join(cmd))
        self._report(current_work)

        start = time.time()
        proc = None
        try:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(self.scratch_dir),
                    env=self.environment(exe),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                )
            except OSError as e:
                logger.exception("Could not start %s", tool)
                raise ToolLaunchFailure(tool, f"Could not start {tool}: {e}") from e

            phase = None
            while proc.poll() is None:
                line = proc.stdout.readline()
                if line:
                    phase = self._handle_line(tool, line, phase)
                else:
                    time.sleep(0.05)
            rc = proc.wait()

            self._drain(tool, proc.stdout.read(), phase)

            if rc != 0:
                raise ToolExitFailure(tool, rc)
        finally:
            if proc is not None:
                if proc.poll() is None:
                    logger.warning("%s is still running, killing it", tool)
                    proc.kill()
                    proc.wait()
                proc.stdout.close()

        logger.info("%s processing took %s", tool, format_elapsed(time.time() - start))
