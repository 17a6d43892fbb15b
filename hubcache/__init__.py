"""hubcache - Versioned offline caching and update coordination for the listings hub."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_or_exit(config_path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_db_or_exit(db_path: str):
    from .storage import StorageError, init_db

    try:
        return init_db(db_path)
    except StorageError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the cache manager and one headless session."""
    global _shutdown_event

    _setup_logging(args.verbose)
    logger.info("hubcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .cache_manager import CacheManager
    from .coordinator import UpdateCoordinator
    from .messaging import MessageChannel

    # 1. Load configuration
    config = _load_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)

    # 2. Initialize storage
    conn = _open_db_or_exit(config.cache.db_path)
    logger.info("Cache storage at %s", config.cache.db_path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    channel = MessageChannel()
    manager = CacheManager(config, conn, channel)
    coordinator = UpdateCoordinator(config.updates, channel, conn)

    try:
        coordinator.start()
        manager.start()
        logger.info("All components started, waiting for shutdown signal...")
        _shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        logger.info("Shutting down components...")
        coordinator.stop()
        manager.stop()
        conn.close()
        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - run one version check."""
    _setup_logging(args.verbose)

    from .cache_manager import CacheManager
    from .messaging import MessageChannel

    config = _load_or_exit(args.config)
    conn = _open_db_or_exit(config.cache.db_path)

    manager = CacheManager(config, conn, MessageChannel())
    candidate = manager.check_for_updates()
    if candidate is None:
        print(f"Up to date (active generation: {manager.active_generation or 'none'})")
    else:
        print(f"Update available: {candidate.version} (build {candidate.build}) as {manager.waiting_generation}")
        if args.activate:
            print(f"Activated {manager.activate()}")
    conn.close()


def _cmd_fetch(args: argparse.Namespace) -> None:
    """Execute the fetch command - serve one request through the cache."""
    _setup_logging(args.verbose)

    from .cache_manager import FROM_CACHE_HEADER, CacheManager, NetworkError
    from .messaging import MessageChannel
    from .models import Request

    config = _load_or_exit(args.config)
    conn = _open_db_or_exit(config.cache.db_path)

    url = args.url if args.url.startswith(("http://", "https://")) else config.resolve(args.url)
    request = Request(
        url=url,
        mode="navigate" if args.navigate else "no-cors",
        accept="text/html" if args.navigate else "*/*",
    )

    manager = CacheManager(config, conn, MessageChannel())
    try:
        response = manager.handle_fetch(request)
    except NetworkError as e:
        print(f"Error: {e}")
        conn.close()
        sys.exit(1)

    source = "offline fallback" if response.headers.get(FROM_CACHE_HEADER) else "cache or network"
    print(f"HTTP {response.status} {response.content_type or '-'} {len(response.body)} bytes ({source})")
    conn.close()


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - show generations and stored version state."""
    from . import storage
    from .cache_manager import ACTIVE_STATIC_KEY
    from .version_store import VersionStore

    config = _load_or_exit(args.config)
    conn = _open_db_or_exit(config.cache.db_path)

    try:
        buckets = storage.list_buckets(conn)
        active = storage.kv_get(conn, ACTIVE_STATIC_KEY)
    except storage.StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)

    store = VersionStore(conn)
    applied = store.read()
    state = store.load_state()

    print(f"Applied version: {applied.version} (build {applied.build or '-'}, timestamp {applied.timestamp})")
    print(f"Last update/prompt: {state.last_applied_timestamp or 'never'}")
    print(f"Session start: {state.app_start_timestamp or 'unknown'}")
    print(f"Pending update: {'yes' if state.pending_update_available else 'no'}")
    print(f"Cache generations ({len(buckets)}):")
    for bucket in buckets:
        marker = "*" if bucket.name == active else " "
        entries = len(storage.entry_urls(conn, bucket.name))
        print(f" {marker} {bucket.name} [{bucket.kind.value}] {entries} entries")
    conn.close()


def _cmd_clear(args: argparse.Namespace) -> None:
    """Execute the clear command - delete every cache generation."""
    from . import storage

    config = _load_or_exit(args.config)
    conn = _open_db_or_exit(config.cache.db_path)

    try:
        deleted = storage.delete_all_buckets(conn)
    except storage.StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Deleted {deleted} cache generation(s).")
    conn.close()


def _cmd_bump_version(args: argparse.Namespace) -> None:
    """Execute the bump-version command - publish a new patch version."""
    from pathlib import Path

    from .deploy import DeployError, bump_version

    try:
        descriptor = bump_version(Path(args.file), notes=args.note)
    except DeployError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Version updated to {descriptor.version}")
    print(f"Build: {descriptor.build}")
    print(f"Timestamp: {descriptor.timestamp}")


def _cmd_touch_version(args: argparse.Namespace) -> None:
    """Execute the touch-version command - re-stamp the current version."""
    from pathlib import Path

    from .deploy import DeployError, touch_version

    try:
        descriptor = touch_version(Path(args.file))
    except DeployError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Version {descriptor.version} re-stamped")
    print(f"Build: {descriptor.build}")
    print(f"Timestamp: {descriptor.timestamp}")
    print("Clients only update on a newer version; use bump-version to ship an update.")


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main() -> None:
    """Main entry point for the hubcache package."""
    parser = argparse.ArgumentParser(
        description="hubcache - Versioned offline caching and update coordination"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"hubcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the cache manager and a headless session (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Run one version check and install a new generation if needed",
    )
    _add_config_argument(check_parser)
    check_parser.add_argument(
        "--activate",
        action="store_true",
        help="Activate the new generation immediately",
    )
    check_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (debug) logging")
    check_parser.set_defaults(func=_cmd_check)

    # Fetch subcommand
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Serve one request through the cache",
    )
    _add_config_argument(fetch_parser)
    fetch_parser.add_argument("url", help="Absolute URL or path on the configured origin")
    fetch_parser.add_argument(
        "--navigate",
        action="store_true",
        help="Treat the request as a page navigation",
    )
    fetch_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (debug) logging")
    fetch_parser.set_defaults(func=_cmd_fetch)

    # Status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="Show cache generations and stored version state",
    )
    _add_config_argument(status_parser)
    status_parser.set_defaults(func=_cmd_status)

    # Clear subcommand
    clear_parser = subparsers.add_parser(
        "clear",
        help="Delete every cache generation",
    )
    _add_config_argument(clear_parser)
    clear_parser.set_defaults(func=_cmd_clear)

    # Bump-version subcommand
    bump_parser = subparsers.add_parser(
        "bump-version",
        help="Increment the patch version in the version descriptor file",
    )
    bump_parser.add_argument(
        "--file",
        default="version.json",
        help="Path to the version descriptor (default: version.json)",
    )
    bump_parser.add_argument(
        "--note",
        action="append",
        help="Changelog line (repeatable)",
    )
    bump_parser.set_defaults(func=_cmd_bump_version)

    # Touch-version subcommand
    touch_parser = subparsers.add_parser(
        "touch-version",
        help="Refresh timestamp and build only; clients do not update on a re-stamp",
    )
    touch_parser.add_argument(
        "--file",
        default="version.json",
        help="Path to the version descriptor (default: version.json)",
    )
    touch_parser.set_defaults(func=_cmd_touch_version)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
