"""Command line entry point for the autobackup service."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from autobackup.config import load_settings
from autobackup.exceptions import BackupError
from autobackup.main import _configure_logging, build_application, link_account, shutdown, start
from autobackup.services.buffer_pool import BufferPool
from autobackup.services.credential_service import (
    AuthEventKind,
    AuthorizationEvent,
    build_authorization_url,
)
from autobackup.services.restore_service import RestoreEngine, RestoreStatus

if TYPE_CHECKING:
    from autobackup.config import Settings
    from autobackup.services.credential_service import CredentialManager

logger = logging.getLogger(__name__)


def read_code_from_stdin(credentials: CredentialManager, url: str) -> None:
    """Prompt for the authorization code and deliver it as a ``newCode`` event."""
    print("Open this URL in a browser and authorize access:")
    print(f"  {url}")
    try:
        code = input("Authorization code: ").strip()
    except EOFError:
        return
    if code:
        credentials.deliver(AuthorizationEvent(AuthEventKind.NEW_CODE, code))


def _load(args: argparse.Namespace) -> Settings:
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except BackupError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    _configure_logging(settings.debug, settings.log_file)
    return settings


def _cmd_run(args: argparse.Namespace) -> None:
    settings = _load(args)
    try:
        app = build_application(settings)
    except BackupError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.once:
        try:
            link_account(app, read_code_from_stdin)
            result = app.orchestrator.run()
        except BackupError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        finally:
            shutdown(app)
        print(f"Backup {result.backup_id}: {result.status} ({result.changed_files} files)")
        return

    stop = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        start(app, read_code_from_stdin)
        stop.wait()
    except BackupError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    finally:
        shutdown(app)


def _cmd_restore(args: argparse.Namespace) -> None:
    _configure_logging(args.debug)
    engine = RestoreEngine(
        Path(args.archive_dir),
        Path(args.output_dir),
        args.backup_id,
        BufferPool(),
        password=args.password or "",
    )
    try:
        result = engine.restore(args.timestamp)
    except BackupError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result.status == RestoreStatus.SELECTION_REQUIRED:
        print(f"Available backups of {args.backup_id} (newest first):")
        for snapshot in result.snapshots:
            print(f"  {snapshot.timestamp}  {snapshot.part_count} part(s)")
        print("Please specify one with --timestamp")
        return
    print(
        f"Restored {result.files_restored} file(s) from {result.parts_restored} part(s) "
        f"into {args.output_dir}"
    )


def _cmd_auth_url(args: argparse.Namespace) -> None:
    settings = _load(args)
    if not settings.client_id:
        print("Error: CLIENT_ID is not configured")
        sys.exit(1)
    print(build_authorization_url(settings.client_id, settings.scope, settings.redirect_uri))


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="autobackup-cli",
        description="Incremental encrypted backups with OneDrive upload",
    )
    parser.add_argument("--config", "-c", help="YAML config file (default: config.yaml)")

    subparsers = parser.add_subparsers(dest="command")
    run_parser = subparsers.add_parser("run", help="Run the backup service")
    run_parser.add_argument("--once", action="store_true", help="Run a single backup and exit")

    restore_parser = subparsers.add_parser("restore", help="Restore a backup from part files")
    restore_parser.add_argument("--archive-dir", required=True, help="Directory holding part files")
    restore_parser.add_argument("--output-dir", required=True, help="Directory to restore into")
    restore_parser.add_argument("--backup-id", required=True, help="Name of the source directory")
    restore_parser.add_argument("--timestamp", help="Run to restore (yyyyMMdd_HHmmss)")
    restore_parser.add_argument("--password", help="Archive password")
    restore_parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers.add_parser("auth-url", help="Print the account authorization URL")

    args = parser.parse_args(argv)
    if args.command == "run":
        _cmd_run(args)
    elif args.command == "restore":
        _cmd_restore(args)
    elif args.command == "auth-url":
        _cmd_auth_url(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
