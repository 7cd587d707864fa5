"""
Command-line entry point.

    adaptive-ocr run [--config cfg.yaml] [--trace out.jsonl] IMAGES...
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .config import load_config
from .context import RunContext
from .logging import configure_logging
from .pipeline import Document
from .scheduler import ExecutionScheduler
from .types import BatchReport, ConfigValidationError

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adaptive-ocr",
        description="Adaptive multi-pass OCR over scanned pages and PDFs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run scan.tif                          # OCR one image
  %(prog)s run --config ocr.yaml pages/*.png     # Batch with a run config
  %(prog)s run --trace trace.jsonl report.pdf    # Also write trace events
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run OCR over a batch of images")
    run_parser.add_argument(
        "images",
        nargs="+",
        type=Path,
        help="Image or PDF files to process",
    )
    run_parser.add_argument(
        "--config",
        type=Path,
        help="YAML run configuration",
    )
    run_parser.add_argument(
        "--trace",
        type=Path,
        help="Append trace events to this JSON-lines file",
    )
    run_parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        help="Log renderer (overrides the configuration)",
    )
    run_parser.add_argument(
        "--workers",
        type=int,
        help="Recognition worker processes (overrides the configuration)",
    )
    run_parser.add_argument(
        "--dpi",
        type=int,
        help="Assume this DPI for every input, ignoring embedded metadata",
    )
    run_parser.add_argument(
        "--text",
        action="store_true",
        help="Include recognized text in the report",
    )
    return parser


async def run_batch(config, documents: List[Document]) -> BatchReport:
    async with RunContext.open(config) as ctx:
        scheduler = ExecutionScheduler(ctx)
        return await scheduler.run_batch(documents)


def render_report(report: BatchReport, include_text: bool = False) -> dict:
    images = []
    for result in report.results:
        entry = result.get_summary()
        if result.error_message:
            entry["error_message"] = result.error_message
        if include_text:
            entry["text"] = result.merged_text
        images.append(entry)
    return {**report.summary(), "results": images}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Logs go to stderr from the start; stdout carries only the report
    configure_logging()

    overrides = {}
    if args.trace:
        overrides["trace_path"] = args.trace
    if args.log_format:
        overrides["log_format"] = args.log_format
    if args.workers is not None:
        overrides["worker_count"] = args.workers

    try:
        config = load_config(args.config, **overrides)
    except ConfigValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        for error in e.errors:
            print(f"  {error['field']}: {error['message']}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(config)

    documents = []
    for path in args.images:
        try:
            documents.append(Document.from_path(path, dpi=args.dpi))
        except OSError as e:
            # Unreadable files are reported as failed documents, not fatal
            logger.warning("Cannot read input", path=str(path), error=str(e))
            documents.append(Document(document_id=path.name, data=b"", dpi=args.dpi))

    report = asyncio.run(run_batch(config, documents))
    print(json.dumps(render_report(report, args.text), indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
