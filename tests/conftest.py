from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import pytest

from metrics_ingest_service.core.exceptions import PartitionCreateFailedError
from metrics_ingest_service.domain.dto import BulkItemResult, MetricWrite
from metrics_ingest_service.main import create_app
from metrics_ingest_service.services.timestamps import TimestampNormalizer
from metrics_ingest_service.settings import Settings

BASE_URL = "http://mf.test:3040/v1"
FIXED_NOW = datetime(2016, 2, 15, 12, 43, 50, 123000, tzinfo=timezone.utc)


class FakeBackend:
    """In-memory backend recording every call.

    ``delay`` yields to the event loop inside each call so concurrent
    callers interleave the way they would against a real store.
    """

    def __init__(self, *, existing: Sequence[str] = (), delay: float = 0.0) -> None:
        self.partitions: dict[str, dict[str, Any]] = {name: {} for name in existing}
        self.documents: list[tuple[str, str, dict[str, Any]]] = []
        self.calls: list[tuple[str, str]] = []
        self.delay = delay
        self.create_successes = 0
        self.create_error: Exception | None = None
        self.reject_duplicate_create = False
        self.exists_error: Exception | None = None
        self.write_error: Exception | None = None
        self.bulk_failures: dict[int, str] = {}
        self.closed = False

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def exists_partition(self, name: str) -> bool:
        self.calls.append(("exists", name))
        await asyncio.sleep(self.delay)
        if self.exists_error is not None:
            raise self.exists_error
        return name in self.partitions

    async def create_partition(self, name: str, mappings: dict[str, Any]) -> bool:
        self.calls.append(("create", name))
        await asyncio.sleep(self.delay)
        if self.create_error is not None:
            raise self.create_error
        if name in self.partitions:
            if self.reject_duplicate_create:
                raise PartitionCreateFailedError(f"index [{name}] already exists", backend_status=400)
            return False
        self.partitions[name] = mappings
        self.create_successes += 1
        return True

    async def write_one(self, partition: str, sub_type: str, document: dict[str, Any]) -> str:
        self.calls.append(("write_one", partition))
        await asyncio.sleep(self.delay)
        if self.write_error is not None:
            raise self.write_error
        self.documents.append((partition, sub_type, document))
        return f"rec-{len(self.documents)}"

    async def write_bulk(self, items: Sequence[MetricWrite]) -> list[BulkItemResult]:
        self.calls.append(("write_bulk", str(len(items))))
        await asyncio.sleep(self.delay)
        if self.write_error is not None:
            raise self.write_error
        results: list[BulkItemResult] = []
        for index, item in enumerate(items):
            if index in self.bulk_failures:
                results.append(BulkItemResult(record_id=None, status=400, error=self.bulk_failures[index]))
                continue
            self.documents.append((item.partition, item.sub_type, item.document))
            results.append(BulkItemResult(record_id=f"rec-{len(self.documents)}", status=201))
        return results

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def normalizer() -> TimestampNormalizer:
    return TimestampNormalizer(tz=timezone.utc, clock=lambda: FIXED_NOW)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(public_base_url=BASE_URL, log_format="console")


@pytest.fixture
async def service_client(aiohttp_client, backend, test_settings):
    app = create_app(backend=backend, cfg=test_settings)
    return await aiohttp_client(app)
