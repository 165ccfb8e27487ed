#!/usr/bin/env python3
"""Command line entry point: scan a song tree and reconcile the catalog."""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

import settings
from catalog import DEFAULT_COLLECTION, DEFAULT_DATABASE, CatalogStore
from media_probe import FFprobeDurationProbe
from songs_scanner import SongScanner


LOGGER = logging.getLogger(__name__)


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def configure_logging(verbose: bool = False) -> None:
    fmt = '%(levelname)s %(name)s: %(message)s' if verbose else '%(message)s'
    formatter = logging.Formatter(fmt)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(_BelowWarning())
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(stdout_handler)
    root.addHandler(stderr_handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_parser(config=None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Scan a directory of UltraStar songs and synchronise the song catalog.',
    )
    parser.add_argument('path', type=Path, help='Root directory to scan.')
    parser.add_argument(
        '--db',
        default=settings.mongo_uri(config),
        help='MongoDB URI of the catalog. The database and collection are created if missing.',
    )
    parser.add_argument(
        '--collection',
        default=settings.mongo_collection(config) or DEFAULT_COLLECTION,
        help='Collection holding the songs (default: %(default)s).',
    )
    parser.add_argument(
        '-s', '--strip-components',
        type=int,
        default=settings.strip_components(config),
        help='How many path components to remove from media paths to match the web server configuration.',
    )
    parser.add_argument(
        '--ffprobe',
        default=settings.ffprobe_executable(config),
        help='ffprobe executable used to measure audio durations.',
    )
    parser.add_argument(
        '--watch',
        action='store_true',
        help='Keep running and re-import whenever songs change.',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug output.')
    return parser


def _watch(scanner: SongScanner) -> None:
    def _run_scan():
        try:
            scanner.scan()
        except (OSError, PyMongoError):
            LOGGER.exception('Live song scan failed')

    handle = scanner.start_watcher(callback=_run_scan, debounce_seconds=0.75)
    LOGGER.info('Watching %s for changes, press Ctrl+C to stop', scanner.songs_dir)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        handle.stop()


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = settings.load_config_module()
    except OSError as exc:
        print('Cannot load configuration: {}'.format(exc), file=sys.stderr)
        return 1
    parser = build_parser(config)
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.strip_components < 0:
        parser.error('--strip-components must not be negative')

    client = None
    try:
        client = MongoClient(args.db)
        database_name = settings.mongo_database(config)
        if database_name:
            db = client[database_name]
        else:
            db = client.get_default_database(default=DEFAULT_DATABASE)
        store = CatalogStore(db, args.collection)
        scanner = SongScanner(
            store,
            args.path,
            args.strip_components,
            probe=FFprobeDurationProbe(args.ffprobe),
        )
        scanner.scan()
        if args.watch:
            _watch(scanner)
    except OSError as exc:
        LOGGER.error('Cannot scan %s: %s', args.path, exc)
        return 1
    except PyMongoError as exc:
        LOGGER.error('Catalog update failed, no changes were saved: %s', exc)
        return 1
    finally:
        if client is not None:
            client.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
