"""
Shared fixtures and helpers for the Skin Applier test suite.
"""

import hashlib
import json
import struct
import sys
import time
import zipfile
from pathlib import Path

import pytest

from apply_controller import ApplyController
from tool_runner import ModTools

FAKE_TOOLS = Path(__file__).parent / "fake_mod_tools.py"


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_installed_mod(installed_dir: Path, dirname: str, payload: bytes = b"payload") -> Path:
    """Create a recognized mod directory in the installed cache."""
    mod = installed_dir / dirname
    (mod / "META").mkdir(parents=True)
    (mod / "META" / "info.json").write_text(json.dumps({"Name": dirname}), encoding="utf-8")
    (mod / "WAD").mkdir()
    (mod / "WAD" / "skin.wad.client").write_bytes(payload)
    return mod


def make_mod_source(dest_dir: Path, name: str, *, with_info: bool = True, ext: str = ".fantome") -> Path:
    """Zip a minimal mod (META/info.json + one wad) as dest_dir/<name><ext>."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    out = dest_dir / f"{name}{ext}"
    with zipfile.ZipFile(out, "w") as zf:
        if with_info:
            zf.writestr("META/info.json", json.dumps({"Name": name, "Author": "tests"}))
        zf.writestr(f"WAD/{name}.wad.client", name.encode("utf-8") * 8)
    return out


def make_corrupt_zip(dest_dir: Path, name: str) -> Path:
    """Zip a deflated META/info.json, then flip every byte of its compressed data."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    out = dest_dir / f"{name}.zip"
    info = json.dumps({"Name": name, "Description": "broken download " * 16})
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("META/info.json", info)
        member = zf.getinfo("META/info.json")

    data = bytearray(out.read_bytes())
    header = member.header_offset
    name_len, extra_len = struct.unpack("<HH", data[header + 26:header + 30])
    start = header + 30 + name_len + extra_len
    for i in range(start, start + member.compress_size):
        data[i] ^= 0xFF
    out.write_bytes(bytes(data))
    return out


def tree_digest(path: Path) -> str:
    """Hash every file under ``path`` (relative names + content)."""
    digest = hashlib.sha256()
    for f in sorted(path.rglob("*")):
        if f.is_file():
            digest.update(f.relative_to(path).as_posix().encode("utf-8"))
            digest.update(f.read_bytes())
    return digest.hexdigest()


def read_calls(state_dir: Path) -> list[list[str]]:
    calls_file = state_dir / "calls.jsonl"
    if not calls_file.exists():
        return []
    return [json.loads(line) for line in calls_file.read_text(encoding="utf-8").splitlines()]


def calls_for(state_dir: Path, verb: str) -> list[list[str]]:
    return [call for call in read_calls(state_dir) if call and call[0] == verb]


@pytest.fixture
def tool_state(tmp_path, monkeypatch):
    """Point the fake mod-tools at a fresh state dir."""
    state = tmp_path / "tool_state"
    state.mkdir()
    monkeypatch.setenv("FAKE_TOOLS_STATE", str(state))
    for var in (
        "FAKE_TOOLS_FAIL_IMPORT",
        "FAKE_TOOLS_HANG_IMPORT",
        "FAKE_TOOLS_MKOVERLAY_FAILURES",
        "FAKE_TOOLS_RUNOVERLAY_EXIT",
    ):
        monkeypatch.delenv(var, raising=False)
    return state


@pytest.fixture
def fake_tools(tool_state):
    return ModTools(FAKE_TOOLS, launcher=(sys.executable,))


@pytest.fixture
def dirs(tmp_path):
    """Return (user_data_dir, game_dir, sources_dir) as fresh tmp_path subdirectories."""
    user_data = tmp_path / "userdata"
    game = tmp_path / "League of Legends" / "Game"
    sources = tmp_path / "skins"
    user_data.mkdir()
    game.mkdir(parents=True)
    sources.mkdir()
    return user_data, game, sources


@pytest.fixture
def sweeps():
    """Records kill-by-name sweeps instead of touching real processes."""
    return []


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(dirs, fake_tools, sweeps, events):
    user_data, _, _ = dirs
    ctl = ApplyController(
        user_data,
        fake_tools,
        event_callback=events.append,
        timeout=30,
        sweep=sweeps.append,
        overlay_retry_delay=0.01,
    )
    yield ctl
    ctl.stop_overlay()
