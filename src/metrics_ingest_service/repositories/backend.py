"""Storage backend for metric documents.

The ingestion pipeline only needs four capabilities from the store, keyed by
partition (index) name and sub-type. ``MetricsBackend`` names them so the
pipeline can run against test doubles; ``ElasticsearchBackend`` is the
production implementation.
"""
from __future__ import annotations

from collections.abc import Awaitable, Sequence
from typing import Any, Protocol, TypeVar

import structlog
from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch

from metrics_ingest_service.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    PartitionCreateFailedError,
)
from metrics_ingest_service.domain.dto import BulkItemResult, MetricWrite
from metrics_ingest_service.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INDEX_EXISTS_ERROR = "resource_already_exists_exception"


class MetricsBackend(Protocol):
    async def exists_partition(self, name: str) -> bool: ...

    async def create_partition(self, name: str, mappings: dict[str, Any]) -> bool:
        """Create the partition; False means another creator got there first."""
        ...

    async def write_one(self, partition: str, sub_type: str, document: dict[str, Any]) -> str: ...

    async def write_bulk(self, items: Sequence[MetricWrite]) -> list[BulkItemResult]:
        """Write all items in one round trip; results follow request order."""
        ...

    async def close(self) -> None: ...


def _error_type(exc: ApiError) -> str | None:
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("type")
    return None


def _describe_item_error(error: Any) -> str | None:
    if error is None:
        return None
    if isinstance(error, dict):
        reason = error.get("reason")
        kind = error.get("type")
        if kind and reason:
            return f"{kind}: {reason}"
        return str(kind or reason or error)
    return str(error)


class ElasticsearchBackend:
    """Provides the backend capabilities on top of ``AsyncElasticsearch``."""

    def __init__(self, client: AsyncElasticsearch, *, sub_type_field: str = "experiment_id") -> None:
        self._client = client
        self._sub_type_field = sub_type_field

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ElasticsearchBackend":
        client = AsyncElasticsearch(
            cfg.elasticsearch_url,
            request_timeout=cfg.elasticsearch_timeout_s,
        )
        return cls(client, sub_type_field=cfg.sub_type_field)

    async def _guarded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except ApiError as exc:
            logger.error("backend_request_failed", operation=operation, status=exc.meta.status, error=str(exc))
            raise BackendError(
                f"Backend rejected operation [{operation}]: {exc.message}",
                backend_status=exc.meta.status,
            ) from exc
        except TransportError as exc:
            logger.error("backend_unavailable", operation=operation, error=str(exc))
            raise BackendUnavailableError(
                f"Could not reach the backend while running [{operation}]"
            ) from exc

    def _document(self, sub_type: str, document: dict[str, Any]) -> dict[str, Any]:
        if self._sub_type_field in document and document[self._sub_type_field] != sub_type:
            logger.warning(
                "sub_type_field_overwritten",
                field=self._sub_type_field,
                sub_type=sub_type,
                dropped=document[self._sub_type_field],
            )
        return {**document, self._sub_type_field: sub_type}

    async def exists_partition(self, name: str) -> bool:
        response = await self._guarded("indices.exists", self._client.indices.exists(index=name))
        return bool(response)

    async def create_partition(self, name: str, mappings: dict[str, Any]) -> bool:
        try:
            await self._client.indices.create(index=name, mappings=mappings)
        except ApiError as exc:
            if _error_type(exc) == INDEX_EXISTS_ERROR:
                return False
            raise PartitionCreateFailedError(
                f"Could not create partition [{name}]: {exc.message}",
                backend_status=exc.meta.status,
            ) from exc
        except TransportError as exc:
            raise BackendUnavailableError(
                f"Could not reach the backend while creating partition [{name}]"
            ) from exc
        return True

    async def write_one(self, partition: str, sub_type: str, document: dict[str, Any]) -> str:
        response = await self._guarded(
            "index",
            self._client.index(index=partition, document=self._document(sub_type, document)),
        )
        return str(response["_id"])

    async def write_bulk(self, items: Sequence[MetricWrite]) -> list[BulkItemResult]:
        operations: list[dict[str, Any]] = []
        for item in items:
            operations.append({"index": {"_index": item.partition}})
            operations.append(self._document(item.sub_type, item.document))

        response = await self._guarded("bulk", self._client.bulk(operations=operations))

        response_items = response["items"]
        if len(response_items) != len(items):
            raise BackendError(
                f"Bulk response has {len(response_items)} items for {len(items)} documents"
            )

        results: list[BulkItemResult] = []
        for entry in response_items:
            action = entry.get("index") or entry.get("create") or next(iter(entry.values()))
            results.append(
                BulkItemResult(
                    record_id=action.get("_id"),
                    status=int(action.get("status", 500)),
                    error=_describe_item_error(action.get("error")),
                )
            )
        return results

    async def close(self) -> None:
        await self._client.close()
