"""
Command line entry point.

    docker-backup [-c CONFIG] [-v] backup [SERVICE ...]
    docker-backup [-c CONFIG] [-v] list [SERVICE]
    docker-backup [-c CONFIG] [-v] restore FILENAME [TARGET] [--yes]
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from . import configure_logging
from .backup.executor import run_backup
from .backup.restore import (AcceptAllDecisionProvider, RestoreError, TerminalDecisionProvider, list_archives,
                             restore_archive)
from .backup.storage import StorageError, create_storage
from .config import DEFAULT_CONFIG_PATH, ConfigError, load_global_config
from .utils.lock import LockError


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog='docker-backup',
        description="Back up docker-compose services: dumps, archive, age encryption, GFS retention",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s backup                     # Back up every service
  %(prog)s backup blog wiki           # Back up only blog and wiki
  %(prog)s list blog                  # List archives of blog
  %(prog)s restore blog-2026-02-12.tar.zst.age /tmp/restore
        """,
    )
    parser.add_argument(
        '-c', '--config',
        metavar='PATH',
        default=os.environ.get('DOCKER_BACKUP_CONFIG', DEFAULT_CONFIG_PATH),
        help=f"Path to docker-backup.conf (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest='command', required=True)

    backup = commands.add_parser('backup', help="Run the backup pipeline")
    backup.add_argument('services', nargs='*', metavar='SERVICE', help="Limit the run to these services")

    listing = commands.add_parser('list', help="List available archives")
    listing.add_argument('service', nargs='?', metavar='SERVICE', help="Only archives of this service")

    restore = commands.add_parser('restore', help="Restore an archive")
    restore.add_argument('filename', metavar='FILENAME', help="Archive filename, as shown by list")
    restore.add_argument('target', nargs='?', default='.', metavar='TARGET',
                         help="Directory to extract into (default: current directory)")
    restore.add_argument('-y', '--yes', action='store_true',
                         help="Restore database dumps without prompting")

    return parser.parse_args(argv)


def cmd_backup(config, args) -> int:
    summary = run_backup(config, services=args.services or None)
    return 1 if summary.failed else 0


def cmd_list(config, args) -> int:
    storage = create_storage(config)
    try:
        descriptors = list_archives(storage, args.service)
    finally:
        storage.close()

    if not descriptors:
        print("No backups found")
        return 0
    for descriptor in descriptors:
        print(descriptor.filename)
    return 0


def cmd_restore(config, args) -> int:
    decisions = AcceptAllDecisionProvider() if args.yes else TerminalDecisionProvider()
    report = restore_archive(config, args.filename, os.path.abspath(args.target), decisions)
    print(f"Restored into {report.target}: {report.restored} database(s) restored, "
          f"{report.skipped} skipped, {len(report.errors)} error(s)")
    return 1 if report.failed else 0


COMMANDS = {
    'backup': cmd_backup,
    'list': cmd_list,
    'restore': cmd_restore,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, load config and dispatch; returns the exit code."""
    args = parse_args(argv)
    configure_logging(level='DEBUG' if args.verbose else 'INFO')

    try:
        config = load_global_config(args.config)
    except ConfigError as e:
        logger.error(f"Invalid config: {e}")
        return 1

    configure_logging(config.log_file, 'DEBUG' if args.verbose else config.log_level)

    try:
        return COMMANDS[args.command](config, args)
    except LockError as e:
        logger.error(str(e))
        return 1
    except (RestoreError, StorageError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130


if __name__ == '__main__':
    sys.exit(main())
