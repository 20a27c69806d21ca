#!/usr/bin/env python3
"""
attest – reference measurement database for remote attestation.

Stores known-good file measurements together with the products, components,
devices and keys they belong to, in a SQLite database.

Operations (the last one given wins):
  --products --components --files --keys --devices --hashes --measurements
  --add --delete

Filters narrow the operation: --did --fid --pid --cid --kid select rows by id,
--device --key --product --component --directory --file select them by name
or path. With --add, named entities that do not exist yet are created.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from attest_db import AttestDB
from common import (
    AttestError,
    DEFAULT_WORKERS,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    setup_logging,
    write_report,
)
from config import load_settings
from digest import AlgorithmRegistry
from ingest_cmd import add, delete
from list_cmd import (
    list_components,
    list_devices,
    list_files,
    list_hashes,
    list_keys,
    list_measurements,
    list_products,
    render_components,
    render_devices,
    render_files,
    render_hashes,
    render_keys,
    render_measurements,
    render_products,
)
from scope import FilterContext, ResolveMode


LISTINGS = {
    "products": (list_products, render_products),
    "components": (list_components, render_components),
    "files": (list_files, render_files),
    "keys": (list_keys, render_keys),
    "devices": (list_devices, render_devices),
    "hashes": (list_hashes, render_hashes),
    "measurements": (list_measurements, render_measurements),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='attest',
        description='Manage the reference measurement database used to verify '
                    'remote attestation reports.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  list:
    attest --products
    attest --components --product "Ubuntu 22.04 x86_64"
    attest --hashes --sha384 --pid 3
    attest --measurements --did 1

  add:
    attest --add --product baseline-v1 --dir /etc --recursive --sha256
    attest --add --product baseline-v1 --component boot
    attest --add --device tnc-client-7 --owner "lab rack 2"
    attest --add --did 1 --key 0x1d4f...9a --pid 2

  delete:
    attest --delete --fid 42
    attest --delete --dir /etc --sha1
    attest --delete --pid 2 --cid 5
        """,
    )

    ops = parser.add_argument_group('operations (the last one given wins)')
    for flag, help_text in (
        ('--products', 'List products'),
        ('--components', 'List components'),
        ('--files', 'List files'),
        ('--keys', 'List keys'),
        ('--devices', 'List devices'),
        ('--hashes', 'List file hashes'),
        ('--measurements', 'List file hashes with product, component and device context'),
        ('--add', 'Add entities, links and file measurements'),
    ):
        ops.add_argument(
            flag,
            dest='operation',
            action='store_const',
            const=flag[2:],
            help=help_text,
        )
    ops.add_argument(
        '--delete', '--del',
        dest='operation',
        action='store_const',
        const='delete',
        help='Delete links, measurements or entities selected by the filters',
    )

    filters = parser.add_argument_group('filters')
    for flag, kind in (
        ('--did', 'device'),
        ('--fid', 'file'),
        ('--pid', 'product'),
        ('--cid', 'component'),
        ('--kid', 'key'),
    ):
        filters.add_argument(flag, type=int, metavar='ID', help=f'Select a {kind} by id')
    filters.add_argument('--device', metavar='IDENT', help='Select a device by identifier')
    filters.add_argument('--key', metavar='HEX', help='Select a key by its hex key identifier')
    filters.add_argument('--product', metavar='NAME', help='Select a product by name')
    filters.add_argument('--component', metavar='NAME', help='Select a component by name')
    filters.add_argument(
        '--directory', '--dir',
        dest='directory',
        type=Path,
        metavar='PATH',
        help='Select a measurement directory; --file paths are relative to it',
    )
    filters.add_argument('--file', type=Path, metavar='PATH', help='Select a file by path')
    filters.add_argument('--owner', help='Owner label stored on the selected device with --add')

    algos = parser.add_argument_group('measurement algorithm')
    for name in ('sha1', 'sha256', 'sha384'):
        algos.add_argument(
            f'--{name}',
            dest='algorithm',
            action='store_const',
            const=name,
            help=f'Use {name.upper()}',
        )
    algos.add_argument(
        '--algorithm',
        dest='algorithm',
        metavar='NAME',
        help='Use a registered algorithm by name',
    )

    options = parser.add_argument_group('options')
    options.add_argument(
        '--recursive',
        action='store_true',
        help='With --add --dir, descend into subdirectories',
    )
    options.add_argument(
        '--workers',
        type=int,
        help=f'Number of parallel hashing threads (default: {DEFAULT_WORKERS})',
    )
    options.add_argument('--db', help='Database URI or path (default: settings or attest.db)')
    options.add_argument('--config', type=Path, help='JSON settings file')
    options.add_argument('--report', type=Path, help='Write a JSON report for --add/--delete')
    options.add_argument('--log', type=Path, help='Write log output to this file')
    options.add_argument('--verbose', action='store_true', help='Enable verbose (debug) logging')
    return parser


def apply_filters(scope: FilterContext, args: argparse.Namespace) -> None:
    """Feed parsed options into the scope in a fixed order.

    Directories are set before files so file paths resolve against them.
    """
    if args.owner is not None:
        scope.set_owner(args.owner)
    if args.algorithm is not None:
        scope.set_algorithm(args.algorithm)
    if args.did is not None:
        scope.set_did(args.did)
    if args.device is not None:
        scope.set_device(args.device)
    if args.kid is not None:
        scope.set_kid(args.kid)
    if args.key is not None:
        scope.set_key(args.key)
    if args.directory is not None:
        scope.set_directory(args.directory)
    if args.fid is not None:
        scope.set_fid(args.fid)
    if args.file is not None:
        scope.set_file(args.file)
    if args.pid is not None:
        scope.set_pid(args.pid)
    if args.product is not None:
        scope.set_product(args.product)
    if args.cid is not None:
        scope.set_cid(args.cid)
    if args.component is not None:
        scope.set_component(args.component)


def execute(
    db: AttestDB,
    args: argparse.Namespace,
    registry: AlgorithmRegistry,
    default_algorithm: str,
    workers: int,
) -> List[str]:
    """Run the selected operation and return the lines to print.

    Filters are resolved in the same transaction as the change they scope,
    so an invocation that fails on a later filter writes nothing.
    """
    operation = args.operation
    mode = ResolveMode.RESOLVE_OR_CREATE if operation == 'add' else ResolveMode.RESOLVE
    scope = FilterContext(db, mode, registry)

    def resolve_scope() -> None:
        apply_filters(scope, args)
        logging.debug(f"{operation}: {scope.describe()}")

    if operation in LISTINGS:
        resolve_scope()
        list_fn, render_fn = LISTINGS[operation]
        rows = list_fn(scope)
        logging.info(f"{len(rows)} {operation} found")
        return render_fn(rows)

    if operation == 'add':
        report = add(
            scope,
            default_algorithm=registry.select(default_algorithm),
            recursive=args.recursive,
            workers=workers,
            resolve_scope=resolve_scope,
        )
    else:
        with db.transaction():
            resolve_scope()
            report = delete(scope)
    if args.report:
        write_report(report, args.report)
    return []


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log, args.verbose)

    if args.operation is None:
        parser.print_usage(sys.stderr)
        logging.error("No operation given")
        return EXIT_FAILURE

    settings = load_settings(args.config)
    db_uri = args.db or settings.database
    workers = args.workers if args.workers is not None else settings.workers

    try:
        registry = AlgorithmRegistry(settings.algorithms)
        db = AttestDB.open(db_uri)
    except AttestError as exc:
        logging.error(str(exc))
        return exc.exit_code

    try:
        lines = execute(db, args, registry, settings.algorithm, workers)
    except AttestError as exc:
        logging.error(str(exc))
        return exc.exit_code
    finally:
        db.close()

    for line in lines:
        print(line)
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
