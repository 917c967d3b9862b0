"""
On-disk cache of mods already imported by mod-tools.

Layout::

    <userData>/cslol_installed/
        mod_0_Spirit Blossom Ahri/META/info.json
        mod_1_Star Guardian Jinx/META/info.json
        temp_1718000000000_0_...   <- leftover of an interrupted rename

A directory is a recognized mod only if it carries ``META/info.json``.  The
``mod_<index>_`` prefix encodes the overlay position; the remainder is the
mod's base name, which is its identity across runs.

Deletes in this module are best-effort: failures are logged and reported
through the return value, never raised (except ``clear_installed_cache``,
which the UI calls explicitly and wants to hear about).
"""

from __future__ import annotations

import logging
import re
import shutil
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path

INSTALLED_DIRNAME = "cslol_installed"
PROFILES_DIRNAME = "profiles"
MOD_MARKER = Path("META") / "info.json"
TEMP_PREFIX = "temp_"
UNPARSABLE_INDEX = 999

MOD_DIR_RE = re.compile(r"^mod_(\d+)_(.+)$")

_log = logging.getLogger(__name__)


@dataclass
class CacheInfo:
    exists: bool
    mod_count: int
    size_in_mb: float


def base_name(source: str | Path) -> str:
    """Identity of a mod source: filename without its last extension, trimmed."""
    return Path(source).stem.strip()


def mod_dir_name(index: int, name: str) -> str:
    return f"mod_{index}_{name}"


def parse_mod_dir_name(dirname: str) -> tuple[int, str] | None:
    match = MOD_DIR_RE.match(dirname)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def _index_sort_key(dirname: str) -> int:
    match = re.match(r"^mod_(\d+)_", dirname)
    return int(match.group(1)) if match else UNPARSABLE_INDEX


def is_mod_dir(path: Path) -> bool:
    return (path / MOD_MARKER).is_file()


def remove_tree_best_effort(path: Path, reason: str = "") -> bool:
    """Remove a directory (or file) tree; log and return False on failure."""
    if not path.exists():
        return True
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        _log.debug("Removed %s%s", path.name, f" ({reason})" if reason else "")
        return True
    except OSError as exc:
        _log.error("Failed to remove %s: %s", path, exc)
        return False


def resolve_duplicates(installed_dir: Path) -> dict[str, str]:
    """Collapse the installed cache to at most one directory per base name.

    Leftover ``temp_*`` directories are deleted.  For a base name with
    several ``mod_<i>_<name>`` directories the lowest index wins and the
    rest are deleted.  Returns ``base_name -> directory name``.
    """
    if not installed_dir.is_dir():
        return {}

    groups: dict[str, list[str]] = defaultdict(list)
    for entry in sorted(installed_dir.iterdir()):
        if not entry.is_dir():
            continue
        if entry.name.startswith(TEMP_PREFIX):
            _log.warning("Cleaning up temp folder: %s", entry.name)
            remove_tree_best_effort(entry, "interrupted rename")
            continue
        parsed = parse_mod_dir_name(entry.name)
        if parsed is None or not is_mod_dir(entry):
            continue
        _, name = parsed
        groups[name].append(entry.name)
        _log.debug("Found existing mod: %s (%s)", entry.name, name)

    resolved: dict[str, str] = {}
    for name, folders in groups.items():
        folders.sort(key=_index_sort_key)
        keep = folders[0]
        if len(folders) > 1:
            _log.warning(
                "Found %d duplicates for %s: %s", len(folders), name, ", ".join(folders)
            )
            for dup in folders[1:]:
                _log.info("Deleting duplicate: %s (keeping %s)", dup, keep)
                remove_tree_best_effort(installed_dir / dup, "duplicate")
        resolved[name] = keep

    _log.info("Found %d already imported mods", len(resolved))
    return resolved


# ── Cache maintenance ─────────────────────────────────────────────────


def clear_installed_cache(installed_dir: Path) -> None:
    _log.info("Clearing imported mods cache")
    if installed_dir.exists():
        shutil.rmtree(installed_dir)
    _log.info("Imported mods cache cleared")


def clear_mod_cache(installed_dir: Path, skin_name: str) -> int:
    """Remove every cached import of one skin. Returns the number removed."""
    name = base_name(skin_name)
    if not name or not installed_dir.is_dir():
        _log.info("No cached versions found for %s", skin_name)
        return 0

    cleared = 0
    for entry in installed_dir.iterdir():
        # Matches mod_<i>_<name> and temp_<stamp>_<i>_<name> alike
        if name in entry.name and remove_tree_best_effort(entry, f"clear {name}"):
            _log.info("Cleared cached mod: %s", entry.name)
            cleared += 1

    if cleared:
        _log.info("Cleared %d cached version(s) of %s", cleared, skin_name)
    else:
        _log.info("No cached versions found for %s", skin_name)
    return cleared


def get_cache_info(installed_dir: Path) -> CacheInfo:
    if not installed_dir.is_dir():
        return CacheInfo(exists=False, mod_count=0, size_in_mb=0.0)

    mod_count = 0
    total_size = 0
    for entry in installed_dir.iterdir():
        if not entry.is_dir():
            continue
        mod_count += 1
        # Estimate: direct files only, subdirectories are not walked
        for child in entry.iterdir():
            if child.is_file():
                try:
                    total_size += child.stat().st_size
                except OSError:
                    continue

    return CacheInfo(
        exists=True,
        mod_count=mod_count,
        size_in_mb=round(total_size / (1024 * 1024), 1),
    )
