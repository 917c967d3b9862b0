#!/usr/bin/env python3
"""Skin Applier — Entry Point"""

import argparse
import faulthandler
import logging
import os
import sys
import threading
import time
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

APP_DIRNAME = "SkinApplier"
TOOLS_DIR_ENV = "SKINAPPLIER_TOOLS_DIR"
UNRAR_ENV = "SKINAPPLIER_UNRAR"


def default_data_dir() -> Path:
    return Path(os.environ.get("APPDATA", "~")).expanduser() / APP_DIRNAME


def setup_logging(log_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "skinapplier.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"))

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(levelname)-8s  %(message)s"))

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    logger.addHandler(console)
    return logger


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # faulthandler writes to its own file; logging is unusable after a C-level crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Skin Applier")
    parser.add_argument("--tools-dir", default=os.environ.get(TOOLS_DIR_ENV))
    parser.add_argument("--user-data-dir", default=str(default_data_dir()))
    parser.add_argument("--timeout", type=float, help="Per-call mod-tools timeout in seconds")
    parser.add_argument("--unrar", default=os.environ.get(UNRAR_ENV), help="UnRAR executable for .rar sources")
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser("apply", help="Apply a preset and run the overlay")
    apply_parser.add_argument("preset", help="Path to a preset JSON file")

    subparsers.add_parser("cache-info", help="Show the imported mods cache size")
    subparsers.add_parser("clear-cache", help="Delete every imported mod")
    clear_mod = subparsers.add_parser("clear-mod", help="Delete cached imports of one skin")
    clear_mod.add_argument("name")
    return parser.parse_args(argv)


def print_event(event) -> None:
    from apply_events import CancelledEvent, ErrorLineEvent, ProgressEvent, StatusEvent

    if isinstance(event, ProgressEvent):
        print(f"[{event.phase}] {event.current}/{event.total} {event.name}")
    elif isinstance(event, StatusEvent) and event.message:
        print(event.message)
    elif isinstance(event, ErrorLineEvent):
        print(event.message, file=sys.stderr)
    elif isinstance(event, CancelledEvent):
        print("Apply cancelled.")


def run_apply(controller, preset_path: Path, logger: logging.Logger) -> int:
    from preset_schema import parse_preset

    request = parse_preset(preset_path.read_bytes())
    result: dict[str, tuple[bool, str]] = {}
    worker = threading.Thread(
        target=lambda: result.setdefault("apply", controller.apply(request)),
        name="apply-worker",
    )
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        ok, msg = controller.cancel()
        logger.info(msg)
        worker.join()

    success, message = result.get("apply", (False, "Apply did not complete"))
    print(message)
    if not success:
        return 1

    print("Overlay running. Press Ctrl+C to stop.")
    try:
        while controller.is_running():
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    controller.stop_overlay()
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    data_dir = Path(args.user_data_dir)
    logger = setup_logging(data_dir / "logs", args.verbose)
    install_crash_handler(logger, data_dir)
    logger.info("Starting Skin Applier")

    from apply_controller import ApplyController
    from tool_runner import DEFAULT_TOOL_TIMEOUT, ModTools

    if args.unrar:
        from mod_source import configure_unrar

        configure_unrar(args.unrar)

    if args.command == "apply" and not args.tools_dir:
        logger.error("No tools directory given (use --tools-dir or %s)", TOOLS_DIR_ENV)
        return 2

    controller = ApplyController(
        data_dir,
        ModTools.from_dir(args.tools_dir or "."),
        event_callback=print_event,
        timeout=args.timeout or DEFAULT_TOOL_TIMEOUT,
    )

    if args.command == "apply":
        return run_apply(controller, Path(args.preset), logger)
    if args.command == "cache-info":
        info = controller.get_cache_info()
        if info.exists:
            print(f"{info.mod_count} mod(s), {info.size_in_mb} MB")
        else:
            print("No imported mods cache")
        return 0
    if args.command == "clear-cache":
        controller.clear_imported_mods_cache()
        return 0
    if args.command == "clear-mod":
        print(f"Removed {controller.clear_skin_cache(args.name)} cached version(s)")
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
