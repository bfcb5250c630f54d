"""Command-line entry points for scheduled jobs and operators.

`scan` is what a cron-style scheduler runs every few minutes; `status` prints
one batch's live counts.
"""

from __future__ import annotations

import argparse
import logging
import sys

from .app.pipeline import build_pipeline
from .app.settings import Settings, configure_logging, get_settings

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="batchchain",
        description="Operate batch image generation chains.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run one stall watchdog scan.")
    scan.add_argument(
        "--batch-id",
        type=str,
        default=None,
        help="Only check tasks of this batch (default: every stale task).",
    )
    scan.add_argument(
        "--check-all",
        action="store_true",
        help="Scan every stale non-terminal task across all batches.",
    )

    status = subparsers.add_parser("status", help="Print progress counts for one batch.")
    status.add_argument("batch_id", type=str, help="Batch identifier.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, *, settings: Settings | None = None) -> int:
    args = _parse_args(argv)
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    pipeline = build_pipeline(settings)
    try:
        if args.command == "scan":
            report = pipeline.watchdog.scan(batch_id=args.batch_id, check_all=args.check_all)
            print(report.model_dump_json(indent=2))
            return 0 if report.status == "success" else 1

        batch = pipeline.aggregator.get_batch_status(args.batch_id)
        print(batch.model_dump_json(indent=2))
        if batch.total == 0:
            logger.warning("batch_status event=not_found batch_id=%s", args.batch_id)
            return 1
        return 0
    finally:
        pipeline.close()


if __name__ == "__main__":
    sys.exit(main())
