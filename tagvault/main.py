# main.py
"""
Command line entry point for tagvault.

``tagvault inspect PACKAGE`` unlocks a saved package and prints statistics
about its items, tags and thumbnail pools.
"""
import argparse
import getpass
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .controllers import DatabaseStore
from .crypto import open_datasource
from .errors import TagVaultError
from .fetching import ArchiveFetcher

LOGGER_NAME = "tagvault"
PASSWORD_ENV = "TAGVAULT_PASSWORD"


def configure_logging() -> logging.Logger:
    """Configure and return the package logger.

    The handler setup is idempotent so repeated calls (e.g. in tests) do not
    duplicate output.  A rotating file handler limits on-disk log growth
    while mirroring output to stdout.
    """

    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
    )

    log_path = Path(config.LOG_PATH).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=config.LOG_MAX_BYTES,
        backupCount=config.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    return logger


def inspect_package(archive: bytes, password: str) -> Dict[str, Any]:
    """Unlock ``archive`` and summarize its content."""
    with ArchiveFetcher(archive) as fetcher:
        members = fetcher.names()
        datasource = open_datasource(fetcher.read_text(config.DATA_MEMBER_NAME), password)
    store = DatabaseStore()
    store.build_runtime_database(datasource).unwrap()
    snapshot = store.snapshot()
    allocations = store.query_pool_allocation()
    return {
        "name": datasource.configurations.name,
        "entries": [f"{e.name} ({e.type})" for e in datasource.configurations.entries],
        "items": len(snapshot.items),
        "tags": {name: len(tags) for name, tags in snapshot.tags.items()},
        "pools": len(allocations),
        "occupied_slots": sum(sum(a.occupied) for a in allocations),
        "encrypted_counter": snapshot.encrypted_counter,
        "members": len(members),
    }


def _format_report(report: Dict[str, Any]) -> List[str]:
    lines = [
        f"Datasource: {report['name']}",
        f"Entries: {', '.join(report['entries']) or '-'}",
        f"Items: {report['items']}",
    ]
    for name, count in report["tags"].items():
        lines.append(f"Tags in {name}: {count}")
    lines.append(f"Thumbnail pools: {report['pools']} ({report['occupied_slots']} slots occupied)")
    lines.append(f"Encrypted messages: {report['encrypted_counter']}/{config.ENCRYPT_MESSAGE_LIMIT}")
    lines.append(f"Package members: {report['members']}")
    return lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tagvault", description=__doc__.strip().splitlines()[0])
    subcommands = parser.add_subparsers(dest="command", required=True)
    inspect = subcommands.add_parser("inspect", help="print statistics about a saved package")
    inspect.add_argument("package", type=Path, help="path to a saved .zip package")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = configure_logging()

    password = os.environ.get(PASSWORD_ENV) or getpass.getpass("Password: ")
    try:
        archive = args.package.read_bytes()
    except OSError as exc:
        logger.error("Cannot read %s: %s", args.package, exc)
        return 1
    try:
        report = inspect_package(archive, password)
    except TagVaultError as exc:
        logger.error("Cannot open %s: %s", args.package, exc)
        return 1
    print("\n".join(_format_report(report)))
    return 0


if __name__ == "__main__":
    sys.exit(main())
