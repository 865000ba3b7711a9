"""
Command-line entry point.

Usage:
    docs-translate PROJECT_DIR                      # translate every file
    docs-translate PROJECT_DIR docs/intro.md        # translate one file
    docs-translate PROJECT_DIR --check-only         # report stale files, write nothing
    docs-translate PROJECT_DIR -r <cache id>        # retranslate one cached chunk

Exit code 0 on full success, 1 if anything failed or check-only found work.
"""

import argparse
import sys
from pathlib import Path

from loguru import logger

from docs_translate import __version__
from docs_translate.config import load_settings
from docs_translate.errors import ConfigurationError
from docs_translate.logs import configure_logging
from docs_translate.orchestrator import Translator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docs-translate",
        description="Translate a markdown documentation tree while keeping its structure line for line"
    )
    parser.add_argument(
        "project_dir",
        type=Path,
        help="Project directory holding translator.config.yaml and the content tree"
    )
    parser.add_argument(
        "file_path",
        nargs="?",
        default=None,
        help="Translate only this markdown file (absolute, project-relative or source-relative)"
    )
    parser.add_argument(
        "-c", "--check-only",
        action="store_true",
        help="Report files that need translation without writing anything"
    )
    parser.add_argument(
        "-r", "--retranslate-cache-id",
        default=None,
        metavar="ID",
        help="Force a new translation of the cached chunk with this id, then re-render its file"
    )
    parser.add_argument(
        "--force-render",
        action="store_true",
        help="Rebuild target files even when they look up to date (cache is still used)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.project_dir.is_dir():
        print(f"Project directory not found: {args.project_dir}", file=sys.stderr)
        return 1

    try:
        settings = load_settings(args.project_dir)
        configure_logging(settings.debug)
        translator = Translator(settings)

        if args.retranslate_cache_id:
            return translator.retranslate_cached_chunk(args.retranslate_cache_id)
        if args.check_only:
            if args.file_path:
                return translator.check_single_file(args.file_path)
            return translator.check_all()
        if args.file_path:
            return translator.translate_single_file(args.file_path, force_render=args.force_render)
        return translator.translate_all(force_render=args.force_render)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
