"""
Upload JSON Lines rows to a BigQuery table.

    python scripts/upload_rows.py --table my-project:logs.builds --rows rows.jsonl
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from bqlink.core.classifier import BigQueryClassifier, as_api_error
from bqlink.core.exceptions import ConfigurationError, ResourceSpecError
from bqlink.core.features import FeatureConfig, add_feature_flags
from bqlink.core.retrier import Retrier, exponential_backoff
from bqlink.core.uploader import TableUploader

logger = logging.getLogger("upload_rows")

TOKEN_ENV = "GOOGLE_OAUTH_ACCESS_TOKEN"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--table", required=True, help="Destination as [project:]dataset.table")
    parser.add_argument("--project", default=os.getenv("GOOGLE_CLOUD_PROJECT", ""),
                        help="Default project when --table has none")
    parser.add_argument("--rows", required=True, help="JSON Lines file, one row per line")
    parser.add_argument("--retries", type=int, default=5)
    parser.add_argument("--initial-backoff", type=float, default=1.0)
    parser.add_argument("--deadline", type=float, default=None,
                        help="Time budget per batch in seconds")
    parser.add_argument("--batch-size", type=int, default=500)
    parser.add_argument("--workers", type=int, default=4)
    parser.add_argument("--retry-on-cancel", action="store_true",
                        help="Retry cancelled calls instead of failing them")
    parser.add_argument("--features", default=None,
                        help="YAML feature config file; feature flags override its values")
    parser.add_argument("-v", "--verbose", action="store_true")
    add_feature_flags(parser)
    return parser


def read_rows(path: str) -> List[Dict[str, Any]]:
    rows = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"{path}:{line_no}: invalid JSON: {e}")
    return rows


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        base = FeatureConfig.from_yaml(args.features) if args.features else None
        # flags given on the command line override the YAML file
        features = FeatureConfig.from_args(args, base=base)
        classifier = BigQueryClassifier(retry_on_cancel=args.retry_on_cancel)
        retrier = Retrier(
            exponential_backoff(args.retries, args.initial_backoff),
            classifier,
            deadline=args.deadline,
        )
        token = os.getenv(TOKEN_ENV)
        uploader = TableUploader.create(
            args.table,
            args.project,
            features,
            token_provider=(lambda: token) if token else None,
            retrier=retrier,
            batch_size=args.batch_size,
            max_workers=args.workers,
        )
        rows = read_rows(args.rows)
    except (ResourceSpecError, ConfigurationError, OSError, ValueError) as e:
        logger.error(str(e))
        return 2

    try:
        result = uploader.upload(rows)
    except Exception as e:
        api_error = as_api_error(uploader.last_error) if uploader.last_error else None
        if api_error is not None:
            logger.error(
                f"Upload failed: {e} (last API error {api_error.code} {api_error.reason})"
            )
        else:
            logger.error(f"Upload failed: {e}")
        return 1

    logger.info(
        f"{result.rows} rows in {result.batches} batches, {len(result.row_errors)} rejected"
    )
    return 1 if result.row_errors else 0


if __name__ == "__main__":
    sys.exit(main())
