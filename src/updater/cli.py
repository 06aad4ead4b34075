#!/usr/bin/env python3
"""
CinePi5 Update CLI

Command-line interface for over-the-air updates and rollback history.
"""

import argparse
import logging
import sys
from typing import List, Optional

from common.config import EngineConfig, load_config
from common.exceptions import CinePiError, CriticalError
from common.logging_config import setup_logging

from .controller import ApplyRollbackController, TransactionState
from .fetcher import ReleaseFetcher
from .health import HealthCheck, HttpHealthCheck, ServiceHealthCheck
from .rollback import RollbackManager
from .supervisor import SystemdSupervisor

logger = logging.getLogger(__name__)

EXIT_CRITICAL = 3


def progress_callback(state: TransactionState, message: str):
    """Display transaction progress."""
    print(f"  [{state.value:>12}] {message}", flush=True)


def build_fetcher(config: EngineConfig, wait: bool = False) -> ReleaseFetcher:
    return ReleaseFetcher(
        config.update.staging_dir,
        config.update.request_timeout,
        lock_path=config.lock_path,
        wait_for_lock=wait,
    )


def build_controller(config: EngineConfig, wait: bool = False) -> ApplyRollbackController:
    """Wire the controller with the systemd supervisor and configured health check."""
    update = config.update
    supervisor = SystemdSupervisor()
    health: HealthCheck = ServiceHealthCheck(supervisor, update.services)
    if update.health_url:
        health = HttpHealthCheck(update.health_url, services=health)

    return ApplyRollbackController(
        update,
        fetcher=build_fetcher(config),
        supervisor=supervisor,
        health=health,
        lock_path=config.lock_path,
        status_path=config.transaction_path,
        rollback=RollbackManager(
            update.rollback_dir,
            history_keep=update.history_keep,
        ),
        wait_for_lock=wait,
    )


def cmd_fetch(config: EngineConfig, args) -> int:
    """Download and verify the latest (or a given) release."""
    print("Checking for updates...")
    candidate = build_fetcher(config, wait=args.wait).fetch(config.update.channel, args.version)
    print(f"Update {candidate.version} downloaded and ready for installation.")
    for name, digest in sorted(candidate.digests.items()):
        print(f"  {name}: sha256 {digest[:16]}...")
    return 0


def cmd_apply(config: EngineConfig, args) -> int:
    """Apply the staged update."""
    controller = build_controller(config, wait=args.wait)
    controller.set_progress_callback(progress_callback)

    try:
        result = controller.trigger()
    except CriticalError as e:
        print(f"\nCRITICAL: {e.message}", file=sys.stderr)
        print("Manual intervention required. See the update log for details.", file=sys.stderr)
        return EXIT_CRITICAL

    print(f"\n{result.message}")
    if result.state in (TransactionState.COMMITTED, TransactionState.IDLE):
        return 0
    return 1


def cmd_status(config: EngineConfig, args) -> int:
    """Show the current or last transaction."""
    controller = build_controller(config)
    status = controller.status()
    staged = controller.fetcher.ready_candidate()

    print(f"Transaction state: {status.state.value}")
    if status.transaction_id:
        print(f"  ID: {status.transaction_id}")
        print(f"  Version: {status.version}")
        print(f"  Started: {status.started_at}")
        print(f"  Updated: {status.updated_at}")
        print(f"  Steps: {' -> '.join(status.steps)}")
    if status.last_error:
        print(f"  Last error: {status.last_error.get('message')}")
    print(f"\nStaged update: {staged.version if staged else 'none'}")
    return 0


def cmd_history(config: EngineConfig, args) -> int:
    """List rollback points kept from earlier transactions."""
    manager = RollbackManager(config.update.rollback_dir, config.update.history_keep)
    points = manager.history()
    if not points:
        print("No rollback history.")
        return 0

    print(f"Rollback history in {manager.history_dir}:\n")
    for point in reversed(points):
        print(f"  {point.name}")
        print(f"      Created: {point.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        print(f"      Targets: {len(point.target_paths)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="CinePi5 Update and Rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cinepi5-update fetch                   # Stage the latest release
  cinepi5-update fetch --version v5.2.0  # Stage a specific release
  cinepi5-update apply                   # Apply with automatic rollback
  cinepi5-update status                  # Show last transaction
  cinepi5-update history                 # List kept rollback archives
        """,
    )
    parser.add_argument("-c", "--config", help="Path to deployment.conf")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    fetch_parser = subparsers.add_parser("fetch", help="Download and verify a release")
    fetch_parser.add_argument("--version", help="Release tag (default: latest)")
    fetch_parser.add_argument("--wait", action="store_true",
                              help="Wait for a running backup or update instead of failing")
    fetch_parser.set_defaults(func=cmd_fetch)

    apply_parser = subparsers.add_parser("apply", help="Apply the staged release")
    apply_parser.add_argument("--wait", action="store_true",
                              help="Wait for a running backup instead of failing")
    apply_parser.set_defaults(func=cmd_apply)

    status_parser = subparsers.add_parser("status", help="Show transaction status")
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser("history", help="List rollback history")
    history_parser.set_defaults(func=cmd_history)

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except CinePiError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_dir=config.log_dir, log_name="update.log",
                  json_logs=config.json_logs)

    if args.command is None:
        return cmd_status(config, args)

    try:
        return args.func(config, args)
    except CinePiError as e:
        logger.error(str(e))
        print(f"Update failed: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
