"""Command-line entry point for the Syncthing folder event daemon."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .config import ConfigError, default_config_path, load_config
from .dispatcher import Dispatcher
from .hooks import HookRegistry
from .supervisor import HookRunner, ProcessReaper, RunningHookTracker
from .syncthing import SyncthingError


def main() -> None:
    parser = argparse.ArgumentParser(description="Run commands when Syncthing folders or files finish syncing")
    parser.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to the YAML configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    config_path = Path(args.config)
    try:
        app_config = load_config(config_path)
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    registry = HookRegistry(app_config.hooks)
    tracker = RunningHookTracker()
    reaper = ProcessReaper(tracker)
    reaper.start()

    dispatcher = Dispatcher(app_config.syncthing, registry, HookRunner(tracker, reaper))
    try:
        dispatcher.run()
    except SyncthingError as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
