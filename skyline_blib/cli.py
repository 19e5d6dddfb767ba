"""Command-line interface for building BLIB spectral libraries."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import library_kwargs, load_config
from .database import LibraryError
from .library import BlibLibrary
from .reader import BlibReader

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Command-line switches take precedence over the config file."""
    lib = config['library']
    if args.authority:
        lib['authority'] = args.authority
    if args.library_id:
        lib['library_id'] = args.library_id
    if args.cache_size is not None:
        if args.cache_size <= 0:
            raise ValueError('Invalid cache size specified.')
        lib['cache_size_mb'] = args.cache_size
    if args.nr:
        lib['redundant'] = False
    return config


def cmd_merge(args: argparse.Namespace) -> int:
    """Merge libraries into one target library."""
    output_path = Path(args.output)
    n_failed = 0
    try:
        config = _apply_overrides(load_config(Path(args.config) if args.config else None), args)
        library = BlibLibrary(output_path, overwrite=args.overwrite, **library_kwargs(config))
        with library:
            for input_path in args.libraries:
                result = library.merge_from(input_path)
                n_failed += len(result.failed)
            revision = library.commit()
            n_spectra = library.count_spectra()
    except (LibraryError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    logger.info(f"Wrote {n_spectra} spectra to {output_path} (revision {revision})")
    if n_failed:
        logger.warning(f"{n_failed} spectra could not be transferred")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Print a summary of a library."""
    try:
        with BlibReader(args.library) as reader:
            info = reader.library_info()
            revision, schema_version = reader.revision_info()
            spectra = reader.spectra_table()
            files = reader.source_files()
    except (LibraryError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1

    print(f"Library:        {args.library}")
    print(f"LSID:           {info['libLSID']}")
    print(f"Created:        {info['createTime']}")
    print(f"Revision:       {revision}")
    print(f"Schema version: {schema_version}")
    print(f"Spectra:        {len(spectra)} (LibInfo: {info['numSpecs']})")
    print(f"Source files:   {len(files)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='blib-store',
        description='Build and merge BLIB spectral libraries.',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    merge_parser = subparsers.add_parser('merge', help='Merge libraries into a target library')
    merge_parser.add_argument('libraries', nargs='+', help='Input BLIB libraries')
    merge_parser.add_argument('-o', '--output', required=True, help='Target BLIB library')
    merge_parser.add_argument('-c', '--config', help='Configuration YAML file')
    merge_parser.add_argument('--overwrite', action='store_true',
                              help='Replace the target instead of appending to it')
    merge_parser.add_argument('--nr', action='store_true', help='Mark the library non-redundant')
    merge_parser.add_argument('-a', '--authority', help='LSID authority')
    merge_parser.add_argument('-i', '--library-id', help='LSID library id')
    merge_parser.add_argument('-m', '--cache-size', type=int, help='SQLite cache size in MB')

    info_parser = subparsers.add_parser('info', help='Summarize a library')
    info_parser.add_argument('library', help='BLIB library')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'merge':
        return cmd_merge(args)
    elif args.command == 'info':
        return cmd_info(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
