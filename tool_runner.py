"""
Running mod-tools as a subprocess.

``ToolInvoker.run`` is the one place a short-lived mod-tools call is made.
It ties the process to the current ``ApplySession``: the handle is tracked
in the session's registry for the whole call, the call aborts on the
session's cancellation flag, and a deadline bounds it.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

from apply_errors import ApplyError, ProcessCancelledError, ProcessTimeoutError, ToolExitError
from apply_session import ApplySession, kill_process

MOD_TOOLS_EXE_NAME = "mod-tools.exe"
DEFAULT_TOOL_TIMEOUT = 300.0
POLL_INTERVAL = 0.1
READER_JOIN_TIMEOUT = 2.0
STDERR_STATUS_MARKERS = ("[INFO]", "[WARN]")

_log = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class ModTools:
    """Location of the mod-tools executable.

    ``launcher`` is prepended to every command line, e.g. an interpreter
    for a script-based stand-in.
    """

    executable: Path
    launcher: tuple[str, ...] = ()

    @classmethod
    def from_dir(cls, tools_dir: str | Path) -> ModTools:
        return cls(Path(tools_dir) / MOD_TOOLS_EXE_NAME)

    @property
    def image_name(self) -> str:
        return self.executable.name

    def exists(self) -> bool:
        return self.executable.is_file()

    def command(self, *args: str) -> list[str]:
        return [*self.launcher, str(self.executable), *args]


def popen_flags() -> int:
    return getattr(subprocess, "CREATE_NO_WINDOW", 0)


def kill_processes_by_name(image_name: str = MOD_TOOLS_EXE_NAME) -> None:
    """Best-effort system-wide kill of every process named ``image_name``."""
    if sys.platform == "win32":
        cmd = ["taskkill", "/F", "/IM", image_name]
    else:
        cmd = ["pkill", "-x", Path(image_name).stem]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=10,
            creationflags=popen_flags(),
        )
        _log.debug("Attempted to kill all %s processes (exit %s)", image_name, result.returncode)
    except (OSError, subprocess.TimeoutExpired) as exc:
        _log.debug("Kill-by-name sweep for %s failed: %s", image_name, exc)


def start_line_reader(
    stream: IO[str],
    sink: list[str],
    on_line: Optional[LineCallback] = None,
    name: str = "tool-output",
) -> threading.Thread:
    """Pump ``stream`` into ``sink`` on a daemon thread, one line at a time."""

    def _pump():
        try:
            for line in iter(stream.readline, ""):
                sink.append(line)
                if on_line:
                    stripped = line.strip()
                    if stripped:
                        on_line(stripped)
        except ValueError:
            # Stream closed underneath us after a kill
            pass
        finally:
            stream.close()

    thread = threading.Thread(target=_pump, name=name, daemon=True)
    thread.start()
    return thread


class ToolInvoker:
    def __init__(self, session: ApplySession, on_status: Optional[LineCallback] = None):
        self.session = session
        self._on_status = on_status

    def _emit(self, line: str) -> None:
        _log.info("[MOD-TOOLS] %s", line)
        if self._on_status:
            self._on_status(line)

    def _emit_stderr(self, line: str) -> None:
        if any(marker in line for marker in STDERR_STATUS_MARKERS):
            self._emit(line)

    def run(
        self,
        command: Sequence[str],
        args: Sequence[str] = (),
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        stream_output: bool = False,
    ) -> str:
        """Run one mod-tools call and return its stdout.

        Raises ``ToolExitError`` on a nonzero exit, ``ProcessTimeoutError``
        when ``timeout`` seconds pass and ``ProcessCancelledError`` when the
        session is (or becomes) cancelled.
        """
        if self.session.cancelled:
            raise ProcessCancelledError()

        argv = [*command, *args]
        _log.debug("Executing: %s", subprocess.list2cmdline(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=popen_flags(),
            )
        except OSError as exc:
            raise ApplyError(f"Could not start {argv[0]}: {exc}") from exc

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        with self.session.processes.track(proc):
            readers = [
                start_line_reader(
                    proc.stdout, stdout_lines, self._emit if stream_output else None, "tool-stdout"
                ),
                start_line_reader(
                    proc.stderr, stderr_lines, self._emit_stderr if stream_output else None, "tool-stderr"
                ),
            ]
            try:
                outcome = self._watch(proc, timeout)
            finally:
                kill_process(proc)
                for reader in readers:
                    reader.join(timeout=READER_JOIN_TIMEOUT)

        if outcome == "cancelled":
            raise ProcessCancelledError()
        if outcome == "timeout":
            raise ProcessTimeoutError(timeout)
        if proc.returncode == 0:
            return "".join(stdout_lines)
        if self.session.cancelled:
            # Killed by ApplyController.cancel() between two polls
            raise ProcessCancelledError()
        raise ToolExitError(proc.returncode, "".join(stderr_lines))

    def _watch(self, proc: subprocess.Popen, timeout: float) -> str:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                proc.wait(timeout=max(0.0, min(POLL_INTERVAL, remaining)))
                return "exited"
            except subprocess.TimeoutExpired:
                pass
            if self.session.cancelled:
                _log.info("Cancelling running tool (pid=%s)", proc.pid)
                kill_process(proc)
                return "cancelled"
            if time.monotonic() >= deadline:
                _log.warning("Tool timed out after %.1fs (pid=%s)", timeout, proc.pid)
                kill_process(proc)
                return "timeout"
