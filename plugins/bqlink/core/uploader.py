"""
Concurrent row uploads to a single BigQuery table.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from bqlink.core.api_client import DEFAULT_BASE_URL, BigQueryClient
from bqlink.core.exceptions import ConfigurationError
from bqlink.core.features import FeatureConfig
from bqlink.core.resource_spec import ResourceIdentifier, parse_resource_spec
from bqlink.core.retrier import Retrier, exponential_backoff

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    """Outcome of TableUploader.upload."""

    batches: int = 0
    rows: int = 0
    failed_batches: int = 0
    row_errors: List[Dict[str, Any]] = field(default_factory=list)


class TableUploader:
    """
    Uploads rows to one table, several batches at a time.

    The table spec is parsed once at construction, so a bad spec fails before
    any request is made. All batches share one Retrier and therefore one
    classifier, whose failure cell holds the last error seen by any worker.
    """

    def __init__(
        self,
        client: BigQueryClient,
        table_spec: str,
        default_project: str,
        features: Optional[FeatureConfig] = None,
        retrier: Optional[Retrier] = None,
        batch_size: int = 500,
        max_workers: int = 4,
    ):
        """
        Args:
            client: Client used for the insert requests
            table_spec: Destination as `[project:]dataset.table`
            default_project: Project used when table_spec has none
            features: Feature configuration in use
            retrier: Retry policy for each batch (5 exponential retries by default)
            batch_size: Rows per insert request
            max_workers: Batches in flight at once

        Raises:
            ResourceSpecError: If table_spec can't be parsed
            ConfigurationError: If batch_size is not positive
        """
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        self.resource: ResourceIdentifier = parse_resource_spec(table_spec, default_project)
        self.client = client
        self.features = features if features is not None else FeatureConfig()
        self.retrier = retrier if retrier is not None else Retrier(exponential_backoff(5, 1.0))
        self.batch_size = batch_size
        self.max_workers = max_workers

    @classmethod
    def create(
        cls,
        table_spec: str,
        default_project: str,
        features: FeatureConfig,
        token_provider: Optional[Callable[[], str]] = None,
        base_url: str = DEFAULT_BASE_URL,
        **kwargs: Any,
    ) -> "TableUploader":
        """Build an uploader with its own client, honouring the credential cache toggle."""
        client = BigQueryClient(
            base_url=base_url,
            token_provider=token_provider,
            cache_credentials=features.enable_credential_cache,
        )
        return cls(client, table_spec, default_project, features=features, **kwargs)

    @property
    def last_error(self) -> Optional[BaseException]:
        """Most recent failure seen by any batch, for diagnostics only."""
        return self.retrier.classifier.last_failure

    def upload(self, rows: List[Dict[str, Any]]) -> UploadResult:
        """
        Insert rows in batches.

        Returns:
            UploadResult with per-row errors translated to absolute row indexes

        Raises:
            Exception: The failure of the first failed batch, once all batches finished
        """
        batches = [
            (start, rows[start:start + self.batch_size])
            for start in range(0, len(rows), self.batch_size)
        ]
        result = UploadResult(batches=len(batches), rows=len(rows))
        if not batches:
            return result

        logger.info(
            f"Uploading {len(rows)} rows to {self.resource} in {len(batches)} batches"
        )

        failures: List[Tuple[int, Exception]] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self.retrier.run, self.client.insert_rows, self.resource, batch): start
                for start, batch in batches
            }
            for future in as_completed(futures):
                start = futures[future]
                try:
                    insert_errors = future.result()
                except Exception as e:
                    logger.error(f"Batch at row {start} failed: {e}")
                    failures.append((start, e))
                    continue
                for error in insert_errors:
                    result.row_errors.append({**error, "index": start + error.get("index", 0)})

        result.failed_batches = len(failures)
        if failures:
            failures.sort(key=lambda f: f[0])
            raise failures[0][1]

        logger.info(
            f"Uploaded {len(rows)} rows to {self.resource} ({len(result.row_errors)} rejected)"
        )
        return result
