#!/usr/bin/env python3
"""
CinePi5 Backup CLI

Command-line interface for scheduled backups, pruning and restores.
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

from common.config import EngineConfig, load_config
from common.exceptions import CinePiError
from common.logging_config import setup_logging

from .archiver import Archiver
from .chain import BackupChain
from .service import BackupService
from .state import SnapshotStateStore

logger = logging.getLogger(__name__)


def _service(config: EngineConfig, args) -> BackupService:
    return BackupService(
        config.backup,
        state_path=config.snapshot_state_path,
        lock_path=config.lock_path,
        wait_for_lock=getattr(args, "wait", False),
    )


def cmd_run(config: EngineConfig, args) -> int:
    """Run one backup (archive, upload, prune)."""
    report = _service(config, args).run_once(force_full=args.full)
    record = report.record
    print(f"Created {record.kind.value} backup: {record.name} ({record.size_str})")
    print(f"  Changed entries: {len(record.changed)}, deleted: {len(record.deleted)}")
    if report.uploaded:
        print("  Remote copy: uploaded")
    elif report.transfer_error:
        print(f"  Remote copy: FAILED ({report.transfer_error})")
    for pruned in report.pruned:
        print(f"  Pruned: {pruned.name}")
    return 0


def cmd_list(config: EngineConfig, args) -> int:
    """List the backup chain."""
    chain = BackupChain.load(config.backup.backup_dir)
    if not len(chain):
        print("No backups found.")
        return 0

    print(f"Backups in {config.backup.backup_dir}:\n")
    for record in chain:
        marker = "F" if record.is_full else " +"
        print(f"  {marker} {record.name}")
        print(f"      Created: {record.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        print(f"      Size: {record.size_str}, changed: {len(record.changed)}")
        if record.parent:
            print(f"      Parent: {record.parent}")
    return 0


def cmd_prune(config: EngineConfig, args) -> int:
    """Apply the retention window."""
    pruned = _service(config, args).prune()
    if not pruned:
        print("Nothing to prune.")
    for record in pruned:
        print(f"Pruned: {record.name}")
    return 0


def cmd_verify(config: EngineConfig, args) -> int:
    """Verify checksums and readability of archives."""
    chain = BackupChain.load(config.backup.backup_dir)
    archiver = Archiver(config.backup.backup_dir, SnapshotStateStore(config.snapshot_state_path))
    records = [chain.get(args.name)] if args.name else list(chain)
    if records == [None]:
        print(f"Backup not found: {args.name}")
        return 1

    failures = 0
    for record in records:
        try:
            archiver.verify(record)
            print(f"  OK      {record.name}")
        except CinePiError as e:
            failures += 1
            print(f"  FAILED  {record.name}: {e.message}")
    return 1 if failures else 0


def cmd_restore(config: EngineConfig, args) -> int:
    """Restore the chain ending at an archive."""
    chain = BackupChain.load(config.backup.backup_dir)
    try:
        if args.as_of:
            when = datetime.fromisoformat(args.as_of)
            if when.tzinfo is None:
                when = when.astimezone()
            lineage = chain.restorable_as_of(when)
            target = lineage[-1] if lineage else None
        else:
            target = chain.get(args.name) if args.name else chain.latest
            lineage = chain.lineage(target) if target else []
    except ValueError as e:
        print(f"Cannot restore: {e}")
        return 1
    if target is None:
        print("No matching backup found.")
        return 1

    print(f"Restoring {target.name} into {args.root} using {len(lineage)} archive(s):")
    for record in lineage:
        print(f"  {record.name}")

    if not args.yes:
        response = input("\nProceed with restore? [y/N] ")
        if response.lower() != "y":
            print("Restore cancelled.")
            return 0

    service = _service(config, args)
    with service.lock:
        count = service.archiver.restore(lineage, root=args.root, clean=args.clean)
    print(f"Restored {count} entries.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="CinePi5 Incremental Backup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cinepi5-backup run                     # Full or incremental, then prune
  cinepi5-backup run --full              # Start a new chain
  cinepi5-backup list                    # Show the backup chain
  cinepi5-backup verify                  # Check every archive
  cinepi5-backup restore --root /mnt/x   # Restore latest state elsewhere
        """,
    )
    parser.add_argument("-c", "--config", help="Path to deployment.conf")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Create a backup")
    run_parser.add_argument("--full", action="store_true", help="Force a full backup")
    run_parser.add_argument("--wait", action="store_true",
                            help="Wait for a running update instead of failing")
    run_parser.set_defaults(func=cmd_run)

    list_parser = subparsers.add_parser("list", help="List backups")
    list_parser.set_defaults(func=cmd_list)

    prune_parser = subparsers.add_parser("prune", help="Apply retention policy")
    prune_parser.set_defaults(func=cmd_prune)

    verify_parser = subparsers.add_parser("verify", help="Verify archives")
    verify_parser.add_argument("-n", "--name", help="Single archive to verify")
    verify_parser.set_defaults(func=cmd_verify)

    restore_parser = subparsers.add_parser("restore", help="Restore a backup chain")
    restore_parser.add_argument("-n", "--name", help="Archive to restore up to (default: latest)")
    restore_parser.add_argument("--as-of", help="Restore the state as of an ISO timestamp")
    restore_parser.add_argument("--root", default="/", help="Restore root (default: /)")
    restore_parser.add_argument("--clean", action="store_true",
                                help="Remove the targets before extracting")
    restore_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    restore_parser.set_defaults(func=cmd_restore)

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except CinePiError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_dir=config.log_dir, log_name="backup.log",
                  json_logs=config.json_logs)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(config, args)
    except CinePiError as e:
        logger.error(str(e))
        print(f"Backup failed: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
