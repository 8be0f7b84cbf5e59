#!/usr/bin/env python
"""Command line entry point for maintaining a MyNotes store."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from mynotes import __version__
from mynotes.backup import BackupManager
from mynotes.config import config
from mynotes.exceptions import MyNotesError
from mynotes.observability import configure_logging, metrics
from mynotes.storage.checklist_repository import ChecklistRepository
from mynotes.storage.folder_repository import FolderRepository
from mynotes.storage.note_repository import NoteRepository
from mynotes.storage.persistence import PersistenceController
from mynotes.storage.tag_repository import TagRepository


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(prog="mynotes", description="MyNotes store maintenance")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("MYNOTES_DATABASE_PATH"),
    )
    parser.add_argument(
        "--backup-dir",
        help="Directory holding backups",
        type=str,
        default=os.environ.get("MYNOTES_BACKUP_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("MYNOTES_LOG_LEVEL", "WARNING"),
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("stats", help="Show record counts")
    commands.add_parser("check", help="Run an integrity check")

    backup = commands.add_parser("backup", help="Manage backups")
    actions = backup.add_subparsers(dest="action", required=True)
    actions.add_parser("create", help="Create a backup now")
    actions.add_parser("list", help="List backups, newest first")
    restore = actions.add_parser("restore", help="Replace the store with a backup")
    restore.add_argument("name", help="Backup file name or path")
    delete = actions.add_parser("delete", help="Delete a backup")
    delete.add_argument("name", help="Backup file name or path")
    return parser


def update_config(args) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.backup_dir:
        config.backup_dir = Path(args.backup_dir)


def _save_metrics_on_exit():
    """Save metrics to disk on shutdown."""
    if metrics.save_metrics():
        logging.getLogger(__name__).info("Metrics saved to disk on shutdown")


def _stats(controller: PersistenceController) -> dict:
    notes = NoteRepository(controller)
    checklists = ChecklistRepository(controller)
    folders = FolderRepository(controller)
    tags = TagRepository(controller)
    usage = tags.usage_counts()
    return {
        "store": controller.location,
        "notes": len(notes.items),
        "pinned_notes": sum(1 for note in notes.items if note.is_pinned),
        "checklists": len(checklists.items),
        "checklist_items": sum(len(checklist.items) for checklist in checklists.items),
        "folders": [folder.name for folder in folders.items],
        "tags": {tag.name: usage.get(tag.id, 0) for tag in tags.items},
    }


def run(args) -> int:
    """Execute the selected command; returns the process exit code."""
    logger = logging.getLogger(__name__)
    controller = PersistenceController()
    try:
        if controller.recovered_from_corruption:
            print(f"Store was corrupted and has been rebuilt; old file kept at "
                  f"{controller.recovered_from_corruption}", file=sys.stderr)

        if args.command == "stats":
            print(json.dumps(_stats(controller), indent=2))
        elif args.command == "check":
            report = controller.check_integrity()
            print(json.dumps(report, indent=2))
            return 0 if report["ok"] else 2
        elif args.command == "backup":
            manager = BackupManager(controller)
            if args.action == "create":
                print(manager.create_backup())
            elif args.action == "list":
                for info in manager.backup_details():
                    print(f"{info['created_at']}  {info['size_mb']:>8.2f} MB  {info['name']}")
            elif args.action == "restore":
                manager.restore_from_backup(args.name)
                print(f"Restored from {args.name}")
            elif args.action == "delete":
                manager.delete_backup(args.name)
                print(f"Deleted {args.name}")
        return 0
    except MyNotesError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1
    finally:
        controller.close()


def main(argv=None) -> int:
    """Run the MyNotes maintenance command line."""
    args = build_parser().parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    atexit.register(_save_metrics_on_exit)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
