"""
Per-apply mutable state: phase, cancellation token, live subprocess handles
and the mods imported so far (for rollback).
"""

from __future__ import annotations

import itertools
import logging
import subprocess
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

_log = logging.getLogger(__name__)

KILL_WAIT_SECONDS = 5.0


class ApplyState(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    RENAMING = "renaming"
    IMPORTING = "importing"
    CREATING_OVERLAY = "creating_overlay"
    RUNNING_OVERLAY = "running_overlay"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


BUSY_STATES = frozenset(
    {
        ApplyState.PLANNING,
        ApplyState.RENAMING,
        ApplyState.IMPORTING,
        ApplyState.CREATING_OVERLAY,
        ApplyState.CANCELLING,
    }
)


def kill_process(proc: subprocess.Popen) -> bool:
    """Kill ``proc`` if it is still running. Safe to call repeatedly."""
    if proc.poll() is not None:
        return False
    try:
        proc.kill()
    except OSError as exc:
        # Exited between poll() and kill()
        _log.debug("kill(pid=%s) failed: %s", proc.pid, exc)
        return False
    try:
        proc.wait(timeout=KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        _log.warning("Process pid=%s did not exit after kill", proc.pid)
    return True


class ProcessRegistry:
    """Live subprocess handles keyed by an opaque id.

    Handles enter through ``track()`` and leave when its block exits, on
    every path.  ``kill_all`` only kills; the owning ``track()`` block is
    what deregisters.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: dict[int, subprocess.Popen] = {}
        self._ids = itertools.count(1)

    @contextmanager
    def track(self, proc: subprocess.Popen) -> Iterator[int]:
        with self._lock:
            handle_id = next(self._ids)
            self._handles[handle_id] = proc
        try:
            yield handle_id
        finally:
            with self._lock:
                self._handles.pop(handle_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, handle_id: object) -> bool:
        with self._lock:
            return handle_id in self._handles

    def snapshot(self) -> list[subprocess.Popen]:
        with self._lock:
            return list(self._handles.values())

    def kill_all(self) -> int:
        killed = 0
        for proc in self.snapshot():
            if kill_process(proc):
                killed += 1
        return killed


class ApplySession:
    """Context of one apply attempt, owned by ``ApplyController``."""

    def __init__(self, request_id: str = ""):
        self.request_id = request_id
        self.phase = ApplyState.IDLE
        self.processes = ProcessRegistry()
        self.imported: list[str] = []
        self.in_flight: str | None = None
        self.owner = threading.current_thread()
        self.done = threading.Event()
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def begin_import(self, name: str) -> None:
        with self._lock:
            self.in_flight = name

    def end_import(self, name: str, succeeded: bool) -> bool:
        """Finish the in-flight import.

        Returns False if the session was cancelled in the meantime; the
        caller then owns removing ``name`` since rollback will not see it.
        """
        with self._lock:
            if self.in_flight == name:
                self.in_flight = None
            if not succeeded:
                return True
            if self.cancelled:
                return False
            self.imported.append(name)
            return True

    def take_rollback(self) -> list[str]:
        """Names to delete on cancellation; clears the record."""
        with self._lock:
            names = list(self.imported)
            if self.in_flight and self.in_flight not in names:
                names.append(self.in_flight)
            self.imported.clear()
            self.in_flight = None
            return names
