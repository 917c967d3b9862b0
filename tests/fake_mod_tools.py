#!/usr/bin/env python3
"""
Stand-in for mod-tools.exe used by the test suite.

Implements the three verbs the applier uses plus a few for ToolInvoker
tests.  Behaviour is steered through environment variables:

    FAKE_TOOLS_STATE              dir for calls.jsonl and attempt counters
    FAKE_TOOLS_FAIL_IMPORT        comma list of base names whose import fails
    FAKE_TOOLS_HANG_IMPORT        comma list of base names whose import hangs
    FAKE_TOOLS_MKOVERLAY_FAILURES number of mkoverlay calls that fail first
    FAKE_TOOLS_RUNOVERLAY_EXIT    "1" makes runoverlay exit on its own
"""

import json
import os
import shutil
import sys
import time
import zipfile
from pathlib import Path


def _env_set(name):
    return {item for item in os.environ.get(name, "").split(",") if item}


def _state_dir():
    state = os.environ.get("FAKE_TOOLS_STATE")
    return Path(state) if state else None


def _record(argv):
    state = _state_dir()
    if state:
        with open(state / "calls.jsonl", "a", encoding="utf-8") as fh:
            fh.write(json.dumps(argv) + "\n")


def _bump(counter):
    path = _state_dir() / f"{counter}.count"
    count = int(path.read_text()) + 1 if path.exists() else 1
    path.write_text(str(count))
    return count


def cmd_import(args):
    source, dest = Path(args[0]), Path(args[1])
    name = dest.name.split("_", 2)[2]
    if name in _env_set("FAKE_TOOLS_FAIL_IMPORT"):
        print(f"[ERROR] Cannot import {name}", file=sys.stderr, flush=True)
        return 1
    print(f"[INFO] Importing {source.name}", flush=True)
    if name in _env_set("FAKE_TOOLS_HANG_IMPORT"):
        time.sleep(60)
        return 0

    print("wad loader: noise", file=sys.stderr, flush=True)
    dest.mkdir(parents=True)
    if source.is_dir():
        shutil.copytree(source, dest, dirs_exist_ok=True)
    elif zipfile.is_zipfile(source):
        with zipfile.ZipFile(source) as zf:
            zf.extractall(dest)
    else:
        (dest / "WAD").mkdir()
        shutil.copy2(source, dest / "WAD" / source.name)
    meta = dest / "META" / "info.json"
    if not meta.exists():
        meta.parent.mkdir(parents=True, exist_ok=True)
        meta.write_text(json.dumps({"Name": name}), encoding="utf-8")
    print("[INFO] Done", flush=True)
    return 0


def cmd_mkoverlay(args):
    attempt = _bump("mkoverlay")
    if attempt <= int(os.environ.get("FAKE_TOOLS_MKOVERLAY_FAILURES", "0")):
        print(f"[ERROR] Overlay attempt {attempt} failed", file=sys.stderr, flush=True)
        return 2
    profile = Path(args[1])
    profile.mkdir(parents=True, exist_ok=True)
    mods = next(arg for arg in args if arg.startswith("--mods:"))[len("--mods:"):]
    (profile / "mods.txt").write_text(mods, encoding="utf-8")
    print("[INFO] Overlay created", flush=True)
    return 0


def cmd_runoverlay(args):
    print("[INFO] Waiting for league to start", flush=True)
    print("[DLL] hooked", flush=True)
    print("[DLL] internal", file=sys.stderr, flush=True)
    print("[WARN] Config missing, using defaults", file=sys.stderr, flush=True)
    if os.environ.get("FAKE_TOOLS_RUNOVERLAY_EXIT") == "1":
        return 0
    sys.stdin.readline()
    print("[INFO] Stopping", flush=True)
    return 0


def cmd_echo(args):
    for arg in args:
        print(arg, flush=True)
    print("[INFO] status on stderr", file=sys.stderr, flush=True)
    print("unrelated diagnostic", file=sys.stderr, flush=True)
    return 0


def cmd_fail(args):
    print("something broke", file=sys.stderr, flush=True)
    return int(args[0]) if args else 3


def cmd_hang(args):
    time.sleep(60)
    return 0


COMMANDS = {
    "import": cmd_import,
    "mkoverlay": cmd_mkoverlay,
    "runoverlay": cmd_runoverlay,
    "echo": cmd_echo,
    "fail": cmd_fail,
    "hang": cmd_hang,
}


def main(argv):
    _record(argv)
    if not argv or argv[0] not in COMMANDS:
        print(f"unknown verb: {argv[:1]}", file=sys.stderr)
        return 64
    return COMMANDS[argv[0]](argv[1:])


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
