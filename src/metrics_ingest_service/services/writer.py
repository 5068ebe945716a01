"""Write executor: persists normalized samples through the backend."""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog

from metrics_ingest_service.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    WriteFailedError,
)
from metrics_ingest_service.domain.dto import MetricWrite
from metrics_ingest_service.repositories.backend import MetricsBackend

logger = structlog.get_logger(__name__)


class WriteExecutor:
    """Single and bulk writes; any failure fails the whole call."""

    def __init__(self, backend: MetricsBackend) -> None:
        self._backend = backend

    async def put(self, item: MetricWrite) -> str:
        try:
            record_id = await self._backend.write_one(item.partition, item.sub_type, item.document)
        except BackendUnavailableError:
            raise
        except BackendError as exc:
            raise WriteFailedError(exc.message) from exc
        logger.debug("metric_written", partition=item.partition, record_id=record_id)
        return record_id

    async def bulk_put(self, items: Sequence[MetricWrite]) -> list[str]:
        """Persist *items* in one round trip, returning ids in input order."""
        if not items:
            return []

        try:
            results = await self._backend.write_bulk(items)
        except BackendUnavailableError:
            raise
        except BackendError as exc:
            raise WriteFailedError(exc.message) from exc

        if len(results) != len(items):
            raise WriteFailedError(f"Backend answered {len(results)} results for {len(items)} metrics")

        failed = [(index, result) for index, result in enumerate(results) if not result.ok]
        if failed:
            for index, result in failed:
                logger.warning(
                    "bulk_item_failed",
                    index=index,
                    partition=items[index].partition,
                    status=result.status,
                    error=result.error,
                )
            statuses: list[dict[str, Any]] = [
                {"status": result.status, "id": result.record_id, "error": result.error}
                for result in results
            ]
            raise WriteFailedError(
                f"{len(failed)} of {len(items)} metrics could not be written",
                items=statuses,
            )

        record_ids = [str(result.record_id) for result in results]
        logger.info("metrics_bulk_written", count=len(record_ids))
        return record_ids
