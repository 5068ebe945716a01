"""Partition naming and lazy, race-tolerant partition provisioning."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from metrics_ingest_service.core.exceptions import BackendError
from metrics_ingest_service.domain.dto import PartitionKey, ProvisionOutcome
from metrics_ingest_service.domain.schema import partition_mappings
from metrics_ingest_service.repositories.backend import MetricsBackend

logger = structlog.get_logger(__name__)


def resolve_partition(workflow_id: str, task_id: str | None = None) -> PartitionKey:
    """Map workflow/task ids onto their partition; ids are case-insensitive."""
    return PartitionKey(
        workflow=workflow_id.lower(),
        task=task_id.lower() if task_id else None,
    )


class _SingleFlight:
    """Per-key asyncio locks, dropped once nobody holds or waits for them."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (asyncio.Lock(), 0))
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


class PartitionProvisioner:
    """Makes sure a partition exists before a single write goes to it.

    Existence check and creation are two backend calls, so concurrent first
    writers may both see the partition missing. A failed or lost creation is
    never fatal: whichever creator wins, the following write succeeds. With
    ``single_flight`` the check/create pair is serialized per partition name
    inside this process.
    """

    def __init__(self, backend: MetricsBackend, *, single_flight: bool = True) -> None:
        self._backend = backend
        self._single_flight = _SingleFlight() if single_flight else None

    async def ensure(self, partition: str) -> ProvisionOutcome:
        if self._single_flight is None:
            return await self._ensure(partition)
        async with self._single_flight.hold(partition):
            return await self._ensure(partition)

    async def _ensure(self, partition: str) -> ProvisionOutcome:
        if await self._backend.exists_partition(partition):
            return ProvisionOutcome.EXISTED

        try:
            created = await self._backend.create_partition(partition, partition_mappings())
        except BackendError as exc:
            logger.warning("partition_create_failed", partition=partition, error=exc.message)
            return ProvisionOutcome.CREATION_FAILED

        if not created:
            logger.info("partition_create_race_lost", partition=partition)
            return ProvisionOutcome.EXISTED

        logger.info("partition_created", partition=partition)
        return ProvisionOutcome.CREATED
