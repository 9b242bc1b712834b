import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path

from batch_categorizer.core import settings
from batch_categorizer.domain.transactions import parse_transaction_records
from batch_categorizer.logger import get_logger, setup_logging
from batch_categorizer.models import Batch
from batch_categorizer.services.pipeline import build_pipeline

logger = get_logger(__name__)


def _batch_payload(batch: Batch) -> dict:
    return {
        "id": batch.id,
        "title": batch.title,
        "summary": batch.summary,
        "insights": batch.insights,
        "metadata": batch.metadata.model_dump(mode="json", by_alias=True),
        "statistics": batch.statistics.model_dump(mode="json", by_alias=True),
        "transactions": [t.model_dump(mode="json") for t in batch.transactions],
    }


async def run(path: Path, *, upload_id: str | None = None, auto_apply: bool = True) -> list[dict]:
    with path.open(newline="", encoding="utf-8-sig") as f:
        rows = list(csv.DictReader(f))
    transactions, errors = parse_transaction_records(rows, source=path.stem, upload_id=upload_id)
    for error in errors:
        logger.warning("[INGEST] Row %s rejected: %s", error.row, error.message)

    pipeline = build_pipeline(auto_apply=auto_apply)
    batches = await pipeline.process(transactions)
    return [_batch_payload(batch) for batch in batches]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Organize and categorize an uploaded transaction file.")
    parser.add_argument("csv_file", type=Path, help="CSV export with at least description and amount columns")
    parser.add_argument("--upload-id", default=None, help="Upload identifier stored on every transaction")
    parser.add_argument("--no-auto-apply", action="store_true", help="Only suggest categories, never assign them")
    args = parser.parse_args(argv)

    setup_logging()
    settings.log_environment()
    if not args.csv_file.exists():
        logger.error("File not found: %s", args.csv_file)
        return 1

    payload = asyncio.run(run(args.csv_file, upload_id=args.upload_id, auto_apply=not args.no_auto_apply))
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
