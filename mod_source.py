"""
Pre-import checks on mod sources.

mod-tools accepts folders, fantome/zip archives and raw wad files.  Folders
and archives must carry ``META/info.json``; we check that before paying for
a subprocess so a broken download fails as a single dropped item.
"""

from __future__ import annotations

import logging
import lzma
import tempfile
import zipfile
import zlib
from pathlib import Path

import py7zr
import rarfile
from pydantic import ValidationError

from apply_errors import ModImportError
from installed_cache import MOD_MARKER
from preset_schema import MOD_INFO_RELPATH, ModInfo, parse_mod_info

_log = logging.getLogger(__name__)

ZIP_EXTENSIONS = {".zip", ".fantome"}
ARCHIVE_EXTENSIONS = ZIP_EXTENSIONS | {".7z", ".rar"}

# Everything a damaged folder or archive can raise while its info is read
READ_ERRORS = (
    OSError,
    EOFError,
    NotImplementedError,
    zlib.error,
    lzma.LZMAError,
    zipfile.BadZipFile,
    py7zr.exceptions.ArchiveError,
    rarfile.Error,
)


def configure_unrar(tool: str | Path):
    """Point rarfile at an UnRAR executable outside PATH."""
    rarfile.UNRAR_TOOL = str(tool)
    _log.info("Using UnRAR at %s", tool)


def _find_member(names: list[str]) -> str | None:
    """Locate META/info.json, allowing one wrapping top-level folder."""
    for name in names:
        normalized = name.replace("\\", "/")
        if normalized == MOD_INFO_RELPATH:
            return name
        parts = normalized.split("/")
        if len(parts) == 3 and "/".join(parts[1:]) == MOD_INFO_RELPATH:
            return name
    return None


def read_archive_info(filepath: Path) -> bytes | None:
    """Return the raw META/info.json of an archive, or None if it has none."""
    ext = filepath.suffix.lower()
    if ext in ZIP_EXTENSIONS:
        with zipfile.ZipFile(filepath, "r") as zf:
            member = _find_member(zf.namelist())
            return zf.read(member) if member else None
    if ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            member = _find_member(sz.getnames())
            if member is None:
                return None
            with tempfile.TemporaryDirectory() as tmpdir:
                sz.extract(path=tmpdir, targets=[member])
                return (Path(tmpdir) / member).read_bytes()
    if ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            member = _find_member([info.filename for info in rf.infolist()])
            return rf.read(member) if member else None
    raise ValueError(f"Unsupported archive format: {ext}")


def validate_mod_source(source: str | Path) -> ModInfo | None:
    """Check a source before import.

    Returns the parsed info for folders and archives, None for file types
    that are handed to mod-tools unchecked.  Raises ``ModImportError``.
    """
    path = Path(source)
    if not path.exists():
        raise ModImportError(f"Mod source not found: {path}")

    is_archive = path.suffix.lower() in ARCHIVE_EXTENSIONS
    if not path.is_dir() and not is_archive:
        return None

    try:
        if path.is_dir():
            marker = path / MOD_MARKER
            raw = marker.read_bytes() if marker.is_file() else None
        else:
            raw = read_archive_info(path)
    except READ_ERRORS as exc:
        raise ModImportError(f"Could not read {path.name}: {exc}") from exc
    if raw is None:
        raise ModImportError(f"{path.name} has no {MOD_INFO_RELPATH}")

    try:
        info = parse_mod_info(raw)
    except (ValueError, ValidationError) as exc:
        raise ModImportError(f"Invalid {MOD_INFO_RELPATH} in {path.name}: {exc}") from exc
    _log.debug("Validated %s (%s)", path.name, info.name or "unnamed")
    return info
