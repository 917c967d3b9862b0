"""Lifecycle of the long-running ``mod-tools runoverlay`` process."""

from __future__ import annotations

import logging
import subprocess
import threading
from typing import Callable, Optional, Sequence

from apply_session import kill_process
from tool_runner import MOD_TOOLS_EXE_NAME, kill_processes_by_name, popen_flags, start_line_reader

# Lines tagged by the injected DLL are logged but not forwarded
SUPPRESSED_TAG = "[DLL]"
STOP_GRACE_SECONDS = 1.0

_log = logging.getLogger(__name__)


class OverlayProcess:
    """Starts, watches and stops the overlay.

    The process runs until the user stops it (or the game closes); it is not
    bound to any apply timeout or cancellation.  Output is forwarded through
    ``on_status``/``on_error``, and ``on_exit`` fires once when it exits.
    """

    def __init__(
        self,
        on_status: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[int | None], None]] = None,
        sweep: Optional[Callable[[str], None]] = None,
        image_name: str = MOD_TOOLS_EXE_NAME,
    ):
        self._on_status = on_status
        self._on_error = on_error
        self._on_exit = on_exit
        self._sweep = sweep if sweep is not None else kill_processes_by_name
        self._image_name = image_name
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._stdout_lines: list[str] = []
        self._stderr_lines: list[str] = []

    @property
    def pid(self) -> int | None:
        proc = self._process
        return proc.pid if proc else None

    def is_running(self) -> bool:
        proc = self._process
        return proc is not None and proc.poll() is None

    def start(self, argv: Sequence[str]) -> None:
        with self._lock:
            if self.is_running():
                raise RuntimeError("Overlay is already running")
            _log.info("Starting runoverlay process...")
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=popen_flags(),
            )
            self._process = proc
            self._stdout_lines = []
            self._stderr_lines = []

        readers = [
            start_line_reader(proc.stdout, self._stdout_lines, self._forward_status, "overlay-stdout"),
            start_line_reader(proc.stderr, self._stderr_lines, self._forward_error, "overlay-stderr"),
        ]
        threading.Thread(
            target=self._wait_for_exit,
            args=(proc, readers),
            name="overlay-watch",
            daemon=True,
        ).start()
        _log.debug("Overlay process started (pid=%s)", proc.pid)

    def _forward_status(self, line: str) -> None:
        _log.info("[MOD-TOOLS] %s", line)
        if self._on_status and not line.startswith(SUPPRESSED_TAG):
            self._on_status(line)

    def _forward_error(self, line: str) -> None:
        _log.error("[MOD-TOOLS ERROR] %s", line)
        if self._on_error and not line.startswith(SUPPRESSED_TAG):
            self._on_error(line)

    def _wait_for_exit(self, proc: subprocess.Popen, readers: list[threading.Thread]) -> None:
        returncode = proc.wait()
        for reader in readers:
            reader.join(timeout=1.0)
        _log.info("Mod tools process exited with code %s", returncode)
        with self._lock:
            if self._process is proc:
                self._process = None
        if self._on_exit:
            self._on_exit(returncode)

    def stop(self) -> None:
        """Ask the overlay to quit, force-kill it if it lingers, then sweep."""
        with self._lock:
            proc = self._process
            self._process = None

        if proc is not None and proc.poll() is None:
            _log.info("Stopping overlay (pid=%s)", proc.pid)
            try:
                proc.stdin.write("\n")
                proc.stdin.flush()
            except (OSError, ValueError) as exc:
                _log.debug("Could not signal overlay via stdin: %s", exc)
            try:
                proc.wait(timeout=STOP_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                _log.info("Overlay still alive after %.1fs, killing", STOP_GRACE_SECONDS)
                kill_process(proc)

        self._sweep(self._image_name)
