import argparse
import sys
import logging
import traceback
from datetime import datetime
from typing import List, NoReturn, Optional

from .config import DEFAULT_CONFIG_PATH, Config, load_config
from .errors import BackupError, ConfigError
from .operations import BackupOperations
from .restore import LATEST

# Configure logging to write to file only, not stdout
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    filename='linkbackup.log',
    filemode='a'
)
logger = logging.getLogger('linkbackup')

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_COMPLETED_WITH_ERRORS = 2


def format_timestamp(timestamp: str) -> str:
    """
    Convert ISO format timestamp to a more readable format.

    Args:
        timestamp (str): ISO format timestamp string

    Returns:
        str: Human-readable timestamp in format YYYY-MM-DD HH:MM:SS
    """
    dt = datetime.fromisoformat(timestamp)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def print_error_and_exit(error_message: str, exit_code: int = EXIT_FAILED,
                         backtrace: bool = False) -> NoReturn:
    """
    Print an error message and exit the program with the specified exit code.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
        backtrace (bool, optional): Also print the active exception's traceback
    """
    logger.error(error_message)
    if backtrace:
        traceback.print_exc()
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def parse_version(value: str):
    """argparse type for --version: a positive integer or 'latest'."""
    if value == LATEST:
        return LATEST
    try:
        version = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid version: {value!r}")
    if version <= 0:
        raise argparse.ArgumentTypeError(f"invalid version: {value!r}")
    return version


def _load(args: argparse.Namespace) -> Config:
    try:
        return load_config(args.config)
    except ConfigError as e:
        print_error_and_exit(f"Invalid configuration: {str(e)}", backtrace=args.backtrace)


def _exit_with(exit_code: int) -> None:
    if exit_code != EXIT_OK:
        sys.exit(exit_code)


def backup_command(args: argparse.Namespace) -> None:
    """
    Execute the backup command over the configured links.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - config: Path to the configuration file
            - link: Optional name of a single link to back up
            - dry_run: Report changes without creating a version
    """
    config = _load(args)
    try:
        links = config.select(args.link)
        logger.info("Starting backup")
        results = BackupOperations(config).backup(links, dry_run=args.dry_run)
    except BackupError as e:
        print_error_and_exit(f"Error running backup: {str(e)}", backtrace=args.backtrace)

    exit_code = EXIT_OK
    for result in results:
        name = result.link.name
        if result.status == "failed":
            print(f"Link '{name}' failed: {result.failure}", file=sys.stderr)
            exit_code = EXIT_FAILED
            continue

        summary = (f"{len(result.added)} added, {len(result.modified)} modified, "
                   f"{len(result.deleted)} deleted, {result.unchanged} unchanged")
        if result.dry_run:
            print(f"Link '{name}' (dry run): {summary}")
        else:
            print(f"Link '{name}': version {result.version} created ({summary})")

        if result.errors:
            print(f"Link '{name}' completed with errors:", file=sys.stderr)
            for error in result.errors:
                print(f"  - {error}", file=sys.stderr)
            if exit_code == EXIT_OK:
                exit_code = EXIT_COMPLETED_WITH_ERRORS

    _exit_with(exit_code)


def restore_command(args: argparse.Namespace) -> None:
    """
    Execute the restore command to recover files from a version.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - config: Path to the configuration file
            - link: Optional name of a single link to restore
            - version: Version number or 'latest'
            - target: Optional directory to restore into instead of the source
            - no_overwrite: Keep files that already exist at the target
            - dry_run: Report what would be restored
    """
    config = _load(args)
    if args.target and not args.link and len(config.links) > 1:
        print_error_and_exit("--target requires --link when more than one link is configured")

    ops = BackupOperations(config)
    try:
        links = config.select(args.link)
        if args.target:
            results = [ops.restore(links[0], args.version, target=args.target,
                                   overwrite=not args.no_overwrite, dry_run=args.dry_run)]
        else:
            results = ops.restore_all(links, args.version, overwrite=not args.no_overwrite,
                                      dry_run=args.dry_run)
    except BackupError as e:
        print_error_and_exit(f"Error restoring: {str(e)}", backtrace=args.backtrace)

    exit_code = EXIT_OK
    for result in results:
        name = result.link.name
        if result.status == "failed":
            print(f"Link '{name}' failed: {result.failure}", file=sys.stderr)
            exit_code = EXIT_FAILED
            continue

        verb = "would be restored" if result.dry_run else "restored"
        print(f"Link '{name}': version {result.version} {verb} to {result.target} "
              f"({len(result.restored)} files, {len(result.skipped)} kept)")
        if result.errors:
            print(f"Link '{name}' completed with errors:", file=sys.stderr)
            for error in result.errors:
                print(f"  - {error}", file=sys.stderr)
            if exit_code == EXIT_OK:
                exit_code = EXIT_COMPLETED_WITH_ERRORS

    _exit_with(exit_code)


def list_command(args: argparse.Namespace) -> None:
    """
    Execute the list command to display the versions of each link.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - config: Path to the configuration file
            - link: Optional name of a single link
    """
    config = _load(args)
    ops = BackupOperations(config)
    try:
        links = config.select(args.link)
    except ConfigError as e:
        print_error_and_exit(str(e), backtrace=args.backtrace)

    exit_code = EXIT_OK
    for link in links:
        try:
            versions = ops.list_versions(link)
        except BackupError as e:
            logger.error(f"Error listing versions of link '{link.name}': {str(e)}")
            print(f"Link '{link.name}': {str(e)}", file=sys.stderr)
            exit_code = EXIT_FAILED
            continue

        print(f"Link '{link.name}' ({link.source} -> {link.destination})")
        if not versions:
            print("No versions found.")
            continue

        print(f"{'VERSION':<9}{'TIMESTAMP':<22}{'ADDED':<8}{'MODIFIED':<10}{'DELETED':<9}{'COPIED_KB':<10}")
        for info in versions:
            print(f"{info.id:<9}{format_timestamp(info.timestamp):<22}{info.added:<8}"
                  f"{info.modified:<10}{info.deleted:<9}{info.bytes_copied // 1024:<10}")

    _exit_with(exit_code)


def check_command(args: argparse.Namespace) -> None:
    """
    Execute the check command to verify the stored copies of each link.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - config: Path to the configuration file
            - link: Optional name of a single link
    """
    config = _load(args)
    ops = BackupOperations(config)
    try:
        links = config.select(args.link)
    except ConfigError as e:
        print_error_and_exit(str(e), backtrace=args.backtrace)

    exit_code = EXIT_OK
    for link in links:
        try:
            all_valid, corrupted_items = ops.check(link)
        except BackupError as e:
            logger.error(f"Error checking link '{link.name}': {str(e)}")
            print(f"Link '{link.name}': {str(e)}", file=sys.stderr)
            exit_code = EXIT_FAILED
            continue

        if all_valid:
            print(f"Link '{link.name}': integrity check passed. All stored content is valid.")
            continue

        print(f"\nLink '{link.name}': integrity check FAILED. Corrupted content detected.\n")
        print(f"Found {len(corrupted_items)} corrupted items:")
        for i, item in enumerate(corrupted_items, 1):
            print(f"\n{i}. Version {item['version']}: {item['path']}")
            print(f"   Stored hash:     {item['stored_hash']}")
            print(f"   Calculated hash: {item['calculated_hash'] or 'missing'}")
        exit_code = EXIT_FAILED

    _exit_with(exit_code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linkbackup",
        description="Versioned backup of configured source directories",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    # Global options go before the subcommand
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to the configuration file"
    )
    parser.add_argument(
        "--backtrace",
        action="store_true",
        help="Print a traceback when an error stops the command"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a new version of every configured link"
    )
    backup_parser.add_argument("--link", help="Only back up the link with this name")
    backup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what changed without creating a version"
    )

    # Restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a version to the source directory"
    )
    restore_parser.add_argument("--link", help="Only restore the link with this name")
    restore_parser.add_argument(
        "--version",
        type=parse_version,
        default=LATEST,
        help="Version number to restore, or 'latest'"
    )
    restore_parser.add_argument(
        "--target",
        help="Restore into this directory instead of the link's source"
    )
    restore_parser.add_argument(
        "--no-overwrite",
        action="store_true",
        help="Keep files that already exist at the restore location"
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be restored without writing anything"
    )

    # List command
    list_parser = subparsers.add_parser(
        "list",
        help="List the versions of each link"
    )
    list_parser.add_argument("--link", help="Only list the link with this name")

    # Check command
    check_parser = subparsers.add_parser(
        "check",
        help="Verify the stored content of each link"
    )
    check_parser.add_argument("--link", help="Only check the link with this name")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the linkbackup command line interface.
    Parses arguments and dispatches to appropriate command handlers.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Command dispatch
    command_handlers = {
        "backup": backup_command,
        "restore": restore_command,
        "list": list_command,
        "check": check_command,
    }

    if args.command in command_handlers:
        command_handlers[args.command](args)
    else:
        parser.print_help()
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
