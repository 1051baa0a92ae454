#!/usr/bin/env python3
"""
CLI for running the memwatch pipeline.

Usage:
    memwatch run --config appsettings.json
    memwatch validate --config appsettings.json
    python -m memwatch run
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from .config import default_config_path, load_config
from .config_monitor import ConfigurationMonitor
from .exceptions import ConfigurationError
from .logging_config import setup_logging
from .process import WatcherPipeline

logger = logging.getLogger("memwatch.cli")

CONFIG_RETRY_SECONDS = 30.0


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self._event = threading.Event()
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self._event.set()

    @property
    def event(self) -> threading.Event:
        """Event set once a shutdown signal arrives."""
        return self._event

    @property
    def should_exit(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


def _resolve_config_path(args) -> Path:
    return Path(args.config) if args.config else default_config_path()


def run_until_shutdown(config_path: Path, shutdown: GracefulShutdown) -> None:
    """
    Run the pipeline, restarting it whenever the settings file changes.

    Invalid configuration is retried every CONFIG_RETRY_SECONDS.
    """
    while not shutdown.should_exit:
        try:
            config = load_config(config_path)
        except ConfigurationError as e:
            logger.error(f"Configuration is invalid: {e}. Retrying in {CONFIG_RETRY_SECONDS:.0f} seconds...")
            shutdown.wait(CONFIG_RETRY_SECONDS)
            continue

        restart = threading.Event()

        def on_change(_config):
            logger.info("Configuration changed. Restarting...")
            restart.set()

        def on_invalid(error):
            logger.error("Configuration became invalid. Stopping the pipeline.")
            restart.set()

        monitor = ConfigurationMonitor(config_path, on_change, on_invalid)
        pipeline = WatcherPipeline(config)
        try:
            monitor.start()
            if pipeline.start(cancel=shutdown.event):
                logger.info(f"Watching: {', '.join(str(r) for r in pipeline.get_watched_roots())}")
                while not shutdown.should_exit and not restart.is_set():
                    restart.wait(timeout=0.5)
        finally:
            monitor.stop()
            pipeline.close()


def cmd_run(args) -> int:
    """Run the watcher pipeline until interrupted."""
    config_path = _resolve_config_path(args)
    log_dir = args.log_dir
    if log_dir is None:
        try:
            log_dir = load_config(config_path, validate=False).log_dir
        except ConfigurationError:
            # reported by the run loop once logging is up
            log_dir = None
    log_file = setup_logging(log_dir, verbose=args.verbose)
    logger.info(f"Starting memwatch (config: {config_path}, log: {log_file})")

    shutdown = GracefulShutdown()
    try:
        run_until_shutdown(config_path, shutdown)
    except Exception as e:
        logger.critical(f"Host terminated unexpectedly: {e}", exc_info=True)
        return 1
    finally:
        logging.shutdown()
    return 0


def cmd_validate(args) -> int:
    """Validate the configuration file and report every problem."""
    config_path = _resolve_config_path(args)
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print(f"Configuration is invalid: {config_path}")
        for error in e.errors or [str(e)]:
            print(f"  - {error}")
        return 1

    print(f"Configuration is valid: {config_path}")
    for directory in config.file_watcher.directories:
        print(
            f"  {directory.path} -> index '{directory.index}' "
            f"(filter {directory.filter}, recursive={directory.include_subdirectories}, "
            f"initial_scan={directory.initial_scan})"
        )
    print(f"  endpoint: {config.memory_service.endpoint}")
    print(f"  schedule: {config.memory_service.schedule_seconds}s")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memwatch",
        description="Watch directories and sync changed documents to a memory service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with ./appsettings.json (or /config/appsettings.json)
  memwatch run

  # Run with an explicit settings file
  memwatch run --config /etc/memwatch/appsettings.json

  # Check a settings file
  memwatch validate --config appsettings.json
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the watcher pipeline")
    run_parser.add_argument("--config", default=None, help="Settings file (default: appsettings.json)")
    run_parser.add_argument("--log-dir", default=None, help="Log directory (default: /config/logs or ./logs)")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a settings file")
    validate_parser.add_argument("--config", default=None, help="Settings file (default: appsettings.json)")
    validate_parser.set_defaults(func=cmd_validate)

    return parser


def main(argv=None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
