"""
Skin Applier - apply orchestration.

Turns an ``ApplyRequest`` into a running overlay:

    PLANNING          validate, wipe profiles, dedup cache, plan
    RENAMING          move cached mods to their new indices (two-phase)
    IMPORTING         mod-tools import, one call per new mod
    CREATING_OVERLAY  mod-tools mkoverlay, retried
    RUNNING_OVERLAY   mod-tools runoverlay, until stopped or it exits

``apply`` blocks and is meant to run on a worker thread; ``cancel`` and the
status queries may be called from any other thread.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from apply_errors import (
    ApplyCancelledError,
    ApplyError,
    ApplyValidationError,
    ModImportError,
    OverlayCreationError,
    TotalFailureError,
)
from apply_events import (
    ApplyEvent,
    CancelledEvent,
    ErrorLineEvent,
    EventCallback,
    OverlayResetEvent,
    ProgressEvent,
    StatusEvent,
)
from apply_session import BUSY_STATES, ApplySession, ApplyState
from installed_cache import (
    INSTALLED_DIRNAME,
    PROFILES_DIRNAME,
    CacheInfo,
    base_name,
    clear_installed_cache,
    clear_mod_cache,
    get_cache_info,
    remove_tree_best_effort,
    resolve_duplicates,
)
from mod_source import validate_mod_source
from overlay_process import OverlayProcess
from preset_schema import ApplyRequest
from reconciliation import ImportOp, RenameOp, collapse_selection, execute_renames, plan_reconciliation
from tool_runner import DEFAULT_TOOL_TIMEOUT, ModTools, ToolInvoker, kill_processes_by_name

OVERLAY_ATTEMPTS = 3
OVERLAY_RETRY_DELAY = 0.5
OVERLAY_SETTLE_DELAY = 0.2
CLEAN_DIR_ATTEMPTS = 3
CLEAN_DIR_RETRY_DELAY = 1.0
CANCEL_JOIN_TIMEOUT = 10.0

_log = logging.getLogger(__name__)


def ensure_clean_directory(path: Path, attempts: int = CLEAN_DIR_ATTEMPTS, delay: float = CLEAN_DIR_RETRY_DELAY):
    """Delete and recreate ``path``, retrying while something holds it open."""
    for attempt in range(1, attempts + 1):
        try:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True, exist_ok=True)
            return
        except OSError:
            _log.warning("Clean directory attempt %d failed for %s", attempt, path)
            if attempt == attempts:
                raise
            time.sleep(delay)


class ApplyController:
    """
    Owns the apply state machine and the overlay process.

    Workflow:
        1. apply(request) on a worker thread; returns (success, message)
        2. cancel() from any thread while is_applying()
        3. stop_overlay() when the user is done playing
    """

    def __init__(
        self,
        user_data_dir: str | Path,
        tools: ModTools,
        event_callback: Optional[EventCallback] = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        sweep: Optional[Callable[[str], None]] = None,
        overlay_retry_delay: float = OVERLAY_RETRY_DELAY,
    ):
        self.user_data_dir = Path(user_data_dir)
        self.installed_dir = self.user_data_dir / INSTALLED_DIRNAME
        self.profiles_dir = self.user_data_dir / PROFILES_DIRNAME
        self.tools = tools
        self.timeout = timeout
        self.overlay_retry_delay = overlay_retry_delay
        self._event_cb = event_callback
        self._sweep = sweep if sweep is not None else kill_processes_by_name

        self._lock = threading.Lock()
        self._state = ApplyState.IDLE
        self._session: Optional[ApplySession] = None
        self.last_session: Optional[ApplySession] = None
        self.overlay = OverlayProcess(
            on_status=lambda line: self._emit(StatusEvent(line)),
            on_error=lambda line: self._emit(ErrorLineEvent(line)),
            on_exit=self._on_overlay_exit,
            sweep=self._sweep,
            image_name=tools.image_name,
        )

    # ── Status ────────────────────────────────────────────────────────

    @property
    def state(self) -> ApplyState:
        with self._lock:
            return self._state

    def is_applying(self) -> bool:
        return self.state in BUSY_STATES

    def is_running(self) -> bool:
        return self.overlay.is_running()

    def check_mod_tools_exist(self) -> bool:
        return self.tools.exists()

    def set_tools_timeout(self, seconds: float):
        self.timeout = float(seconds)

    def _emit(self, event: ApplyEvent):
        if self._event_cb:
            self._event_cb(event)

    def _set_state(self, session: ApplySession, state: ApplyState):
        """Move to ``state`` unless ``session`` has been superseded or cancelled."""
        with self._lock:
            if self._session is not session or self._state == ApplyState.CANCELLING:
                return
            _log.debug("State %s -> %s", self._state.value, state.value)
            self._state = state
            session.phase = state

    def _checkpoint(self, session: ApplySession):
        if session.cancelled:
            raise ApplyCancelledError()

    # ── Apply ─────────────────────────────────────────────────────────

    def apply(self, request: ApplyRequest) -> tuple[bool, str]:
        with self._lock:
            if self._state in BUSY_STATES:
                return False, "An apply operation is already in progress"
            session = ApplySession(request.id)
            self._session = session
            self._state = session.phase = ApplyState.PLANNING

        try:
            count = self._run_pipeline(session, request)
        except ApplyCancelledError as exc:
            _log.info("Apply cancelled: %s", exc)
            self._finish(session, ApplyState.CANCELLED)
            self._emit(CancelledEvent())
            return False, str(exc)
        except ApplyError as exc:
            _log.error("Failed to apply preset: %s", exc)
            self._finish(session, ApplyState.FAILED)
            return False, str(exc)
        except Exception as exc:
            _log.exception("Unexpected error while applying preset")
            self._finish(session, ApplyState.FAILED)
            return False, f"Unexpected error: {exc}"

        self._finish(session, ApplyState.SUCCEEDED)
        return True, f"Preset applied successfully ({count} mod(s))"

    def _finish(self, session: ApplySession, outcome: ApplyState):
        with self._lock:
            session.phase = outcome
            self.last_session = session
            if self._session is session and self._state != ApplyState.CANCELLING:
                # A failed validation leaves the previous overlay untouched
                if self.overlay.is_running():
                    self._state = ApplyState.RUNNING_OVERLAY
                else:
                    self._state = ApplyState.IDLE
                self._session = None
        session.done.set()

    def _run_pipeline(self, session: ApplySession, request: ApplyRequest) -> int:
        self._validate(request)
        self.stop_overlay()
        self._warn_onedrive()

        _log.debug("Preparing directories")
        ensure_clean_directory(self.profiles_dir)
        self.installed_dir.mkdir(parents=True, exist_ok=True)

        selection = collapse_selection(request.selected_skins)
        installed = resolve_duplicates(self.installed_dir)
        _log.info("Processing %d skins", len(selection))
        plan = plan_reconciliation(selection, installed)
        final_names = list(plan.final_names)
        total = len(selection)

        self._checkpoint(session)
        if plan.rename_ops:
            self._set_state(session, ApplyState.RENAMING)
            execute_renames(
                self.installed_dir,
                plan.rename_ops,
                on_progress=lambda op: self._emit_rename_progress(op, total),
            )

        self._set_state(session, ApplyState.IMPORTING)
        invoker = ToolInvoker(session, on_status=lambda line: self._emit(StatusEvent(line)))
        for op in plan.import_ops:
            self._checkpoint(session)
            self._emit(ProgressEvent("importing", op.index + 1, total, base_name(op.source)))
            try:
                self._import_one(session, invoker, request, op, total)
            except ModImportError as exc:
                _log.error("Failed to import skin %d: %s", op.index + 1, exc)
                final_names.remove(op.target_name)

        if not final_names:
            raise TotalFailureError("Failed to import any skins")
        _log.info(
            "Operations complete. Renamed: %d, Imported: %d, Total: %d",
            len(plan.rename_ops),
            len(plan.import_ops),
            len(final_names),
        )

        profile_dir = self.profiles_dir / request.profile_name
        self._checkpoint(session)
        self._set_state(session, ApplyState.CREATING_OVERLAY)
        self._create_overlay(invoker, request, profile_dir, final_names)

        time.sleep(OVERLAY_SETTLE_DELAY)
        with self._lock:
            # Atomic with cancel(): once the overlay starts this apply is done
            self._checkpoint(session)
            self.overlay.start(
                self.tools.command(
                    "runoverlay",
                    os.path.normpath(profile_dir),
                    os.path.normpath(f"{profile_dir}.config"),
                    f"--game:{request.game_path}",
                    "--opts:none",
                )
            )
            if self._session is session:
                self._state = session.phase = ApplyState.RUNNING_OVERLAY
        return len(final_names)

    def _validate(self, request: ApplyRequest):
        if not self.tools.exists():
            raise ApplyValidationError("CS:LOL tools not found. Please download them first.")
        if not request.game_path or not Path(request.game_path).is_dir():
            raise ApplyValidationError("Game directory not found")
        if not request.selected_skins:
            raise ApplyValidationError("No skins selected")

    def _warn_onedrive(self):
        for path in (self.installed_dir, self.profiles_dir):
            if "onedrive" in str(path).lower():
                _log.warning("OneDrive detected in path %s - this may cause file access issues", path)

    def _emit_rename_progress(self, op: RenameOp, total: int):
        self._emit(ProgressEvent("renaming", 0, total, op.source))

    def _import_one(
        self,
        session: ApplySession,
        invoker: ToolInvoker,
        request: ApplyRequest,
        op: ImportOp,
        total: int,
    ):
        _log.info("Importing %d/%d: %s", op.index + 1, total, op.target_name)
        try:
            validate_mod_source(op.source)
        except ModImportError:
            raise
        except Exception as exc:
            _log.exception("Unexpected error checking %s", op.source)
            raise ModImportError(f"Could not check {base_name(op.source)}: {exc}") from exc

        target = self.installed_dir / op.target_name
        args = [
            "import",
            os.path.normpath(op.source),
            os.path.normpath(target),
            f"--game:{request.game_path}",
        ]
        if request.no_tft:
            args.append("--noTFT")

        session.begin_import(op.target_name)
        try:
            invoker.run(self.tools.command(), args, self.timeout, stream_output=True)
        except ApplyCancelledError:
            session.end_import(op.target_name, succeeded=False)
            remove_tree_best_effort(target, "cancelled import")
            raise
        except ApplyError as exc:
            session.end_import(op.target_name, succeeded=False)
            remove_tree_best_effort(target, "failed import")
            raise ModImportError(str(exc)) from exc

        if not session.end_import(op.target_name, succeeded=True):
            # Rollback already ran; this import is ours to undo
            remove_tree_best_effort(target, "cancelled import")
            raise ApplyCancelledError()
        _log.info("Successfully imported: %s", op.target_name)

    def _create_overlay(
        self,
        invoker: ToolInvoker,
        request: ApplyRequest,
        profile_dir: Path,
        final_names: list[str],
    ):
        _log.info("Creating overlay...")
        args = [
            "mkoverlay",
            os.path.normpath(self.installed_dir),
            os.path.normpath(profile_dir),
            f"--game:{request.game_path}",
            f"--mods:{'/'.join(final_names)}",
        ]
        if request.no_tft:
            args.append("--noTFT")
        if request.ignore_conflict:
            args.append("--ignoreConflict")

        last_error: Optional[ApplyError] = None
        for attempt in range(1, OVERLAY_ATTEMPTS + 1):
            if attempt > 1:
                _log.info("Retrying overlay creation, attempt %d/%d", attempt, OVERLAY_ATTEMPTS)
                time.sleep(self.overlay_retry_delay)
            _log.debug("Executing mkoverlay (attempt %d): %s", attempt, " ".join(args))
            try:
                invoker.run(self.tools.command(), args, self.timeout, stream_output=True)
            except ApplyCancelledError:
                raise
            except ApplyError as exc:
                last_error = exc
                _log.error("Overlay creation attempt %d failed: %s", attempt, exc)
                continue
            _log.info("Overlay created successfully")
            return

        raise OverlayCreationError(
            f"Failed to create overlay after {OVERLAY_ATTEMPTS} attempts: {last_error}"
        )

    # ── Cancel / stop ─────────────────────────────────────────────────

    def cancel(self) -> tuple[bool, str]:
        with self._lock:
            session = self._session
            if session is None or self._state not in BUSY_STATES or self._state == ApplyState.CANCELLING:
                return False, "No apply operation in progress"
            _log.info("Cancelling apply operation...")
            self._state = session.phase = ApplyState.CANCELLING
            session.cancel()

        killed = session.processes.kill_all()
        if killed:
            _log.info("Killed %d running tool process(es)", killed)
        self._sweep(self.tools.image_name)

        if threading.current_thread() is not session.owner:
            if not session.done.wait(timeout=CANCEL_JOIN_TIMEOUT):
                _log.warning("Apply worker did not stop within %.0fs", CANCEL_JOIN_TIMEOUT)

        names = session.take_rollback()
        if names:
            _log.info("Cleaning up %d partially imported mods", len(names))
            for name in names:
                remove_tree_best_effort(self.installed_dir / name, "rollback")

        with self._lock:
            session.phase = ApplyState.CANCELLED
            if self._session is session:
                self._session = None
            self._state = ApplyState.IDLE
        self._emit(StatusEvent("Apply operation cancelled"))
        return True, "Apply operation cancelled successfully"

    def stop_overlay(self):
        self.overlay.stop()
        with self._lock:
            if self._state == ApplyState.RUNNING_OVERLAY:
                self._state = ApplyState.IDLE

    def _on_overlay_exit(self, returncode: int | None):
        with self._lock:
            if self._state == ApplyState.RUNNING_OVERLAY:
                self._state = ApplyState.IDLE
        self._emit(OverlayResetEvent())

    # ── Cache maintenance ─────────────────────────────────────────────

    def clear_imported_mods_cache(self):
        if self.is_applying():
            raise RuntimeError("Cannot clear the cache while an apply is in progress")
        clear_installed_cache(self.installed_dir)

    def clear_skin_cache(self, skin_name: str) -> int:
        return clear_mod_cache(self.installed_dir, skin_name)

    def get_cache_info(self) -> CacheInfo:
        return get_cache_info(self.installed_dir)
