"""
Reconciliation of the desired skin selection against the installed cache.

``plan_reconciliation`` is pure: given the ordered selection and the
post-dedup cache state it decides which cached mods move to a new index and
which sources still need a ``mod-tools import``.  ``execute_renames`` then
performs the moves in two phases so that swapped positions never clobber
each other.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from apply_errors import RenameError
from installed_cache import TEMP_PREFIX, base_name, mod_dir_name

_log = logging.getLogger(__name__)


@dataclass
class RenameOp:
    source: str
    target: str
    temp_name: str


@dataclass
class ImportOp:
    source: str
    target_name: str
    index: int


@dataclass
class ReconciliationPlan:
    rename_ops: list[RenameOp] = field(default_factory=list)
    import_ops: list[ImportOp] = field(default_factory=list)
    final_names: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.rename_ops and not self.import_ops


def collapse_selection(sources: Sequence[str]) -> list[str]:
    """Drop later sources whose base name was already selected."""
    seen: set[str] = set()
    kept: list[str] = []
    for source in sources:
        name = base_name(source)
        if name in seen:
            _log.warning("Skipping duplicate selection of %s (%s)", name, source)
            continue
        seen.add(name)
        kept.append(source)
    return kept


def plan_reconciliation(
    sources: Sequence[str],
    installed: Mapping[str, str],
    *,
    stamp: int | None = None,
) -> ReconciliationPlan:
    """Diff ``sources`` (already collapsed) against ``installed``.

    ``installed`` maps base name to its single cached directory name, as
    returned by ``installed_cache.resolve_duplicates``.
    """
    if stamp is None:
        stamp = int(time.time() * 1000)

    plan = ReconciliationPlan()
    for index, source in enumerate(sources):
        name = base_name(source)
        target = mod_dir_name(index, name)
        current = installed.get(name)

        if current is None:
            plan.import_ops.append(ImportOp(source=source, target_name=target, index=index))
            _log.info("Will import: %s as %s", name, target)
        elif current != target:
            plan.rename_ops.append(
                RenameOp(
                    source=current,
                    target=target,
                    temp_name=f"{TEMP_PREFIX}{stamp}_{index}_{name}",
                )
            )
            _log.info("Will rename: %s -> %s", current, target)
        else:
            _log.info("Mod already in correct position: %s", target)

        plan.final_names.append(target)

    return plan


def move_path(source: Path, dest: Path) -> None:
    """Rename ``source`` to ``dest``, copying across devices when needed."""
    try:
        os.rename(source, dest)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        _log.debug("Cross-device move, copying %s -> %s", source, dest)
        if source.is_dir():
            shutil.copytree(source, dest)
            shutil.rmtree(source)
        else:
            shutil.copy2(source, dest)
            source.unlink()


def execute_renames(
    installed_dir: Path,
    ops: Sequence[RenameOp],
    on_progress: Optional[Callable[[RenameOp], None]] = None,
) -> None:
    """Apply ``ops`` in two phases: every source to its temp name, then every
    temp name to its target.  Raises ``RenameError`` on the first failure."""
    if not ops:
        return
    _log.info("Executing %d rename operations", len(ops))

    for op in ops:
        if on_progress:
            on_progress(op)
        try:
            move_path(installed_dir / op.source, installed_dir / op.temp_name)
        except OSError as exc:
            _log.error("Failed to rename to temp: %s: %s", op.source, exc)
            raise RenameError(f"Failed to rename {op.source}: {exc}") from exc
        _log.debug("Renamed to temp: %s -> %s", op.source, op.temp_name)

    for op in ops:
        try:
            move_path(installed_dir / op.temp_name, installed_dir / op.target)
        except OSError as exc:
            _log.error("Failed to rename from temp: %s: %s", op.temp_name, exc)
            raise RenameError(f"Failed to rename {op.temp_name} to {op.target}: {exc}") from exc
        _log.debug("Renamed to final: %s -> %s", op.temp_name, op.target)
