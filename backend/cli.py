"""
Command line entry point for pack administration.

    python cli.py import -f mypack-1.2.0.mrpack [-p id] [-y] [-n]
    python cli.py serve --port 8080
"""

import argparse
import logging
import sys
from pathlib import Path

from archive_import import import_archive
from config import PACKS_ROOT
from errors import ErrorKind, Outcome
from log_context import configure_logging, set_component

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_OUTSIDE_ROOT = 3
EXIT_EMPTY_ARCHIVE = 5
EXIT_FAILURE = 10


def exit_code_for(outcome: Outcome) -> int:
    if outcome.ok:
        return EXIT_OK
    if outcome.code == "outside_root":
        return EXIT_OUTSIDE_ROOT
    if outcome.code == "empty_archive":
        return EXIT_EMPTY_ARCHIVE
    if outcome.error == ErrorKind.VALIDATION or outcome.code == "missing_archive":
        return EXIT_VALIDATION
    return EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pack distribution tools")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    import_parser = subparsers.add_parser("import", help="Import a .zip/.mrpack/.mcpack archive as a pack")
    import_parser.add_argument("archive", nargs="?", help="Archive to import")
    import_parser.add_argument("-f", "--file", dest="file", help="Archive to import")
    import_parser.add_argument("-p", "--pack", help="Pack id (defaults to the archive's own name)")
    import_parser.add_argument("-v", "--version", help="Target version (advisory; packs keep one snapshot)")
    import_parser.add_argument("-y", "--overwrite", action="store_true", help="Replace an existing pack instead of merging")
    import_parser.add_argument("-n", "--no-download", "--no-dl", dest="no_download", action="store_true",
                               help="Do not download remote files listed by a Modrinth index")
    import_parser.add_argument("--root", type=Path, help=f"Packs root (default {PACKS_ROOT})")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument("--root", type=Path, help=f"Packs root (default {PACKS_ROOT})")
    return parser


def run_import(args) -> int:
    set_component("CLI:import")
    archive = args.file or args.archive
    if not archive:
        print("Import error: no archive given (use -f/--file)", file=sys.stderr)
        return EXIT_VALIDATION

    outcome = import_archive(
        archive,
        root=args.root,
        pack_id=args.pack,
        version=args.version,
        overwrite=args.overwrite,
        auto_download=not args.no_download,
    )
    for warning in outcome.warnings:
        print(f"Import warning: {warning}", file=sys.stderr)
    if not outcome.ok:
        print(f"Import error: {outcome.message}", file=sys.stderr)
        return exit_code_for(outcome)

    report = outcome.value
    print(f"Imported '{report.pack_id}' into {report.target_dir}")
    print(f"  extracted: {report.extracted}")
    if report.downloaded or report.failed_downloads or report.skipped_downloads:
        print(f"  downloaded: {len(report.downloaded)}, skipped: {len(report.skipped_downloads)}, "
              f"failed: {len(report.failed_downloads)}")
    return EXIT_OK


def run_serve(args) -> int:
    import uvicorn
    from app import app
    from pack_service import PackService
    from packs_routes import set_pack_service

    set_component("CLI:serve")
    if args.root:
        set_pack_service(PackService(root=args.root))
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


def main(argv=None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_VALIDATION

    try:
        if args.command == "import":
            return run_import(args)
        if args.command == "serve":
            return run_serve(args)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILURE
    parser.print_help()
    return EXIT_VALIDATION


if __name__ == "__main__":
    sys.exit(main())
