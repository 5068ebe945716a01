"""Ingestion coordinator for single and bulk metric writes."""
from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog

from metrics_ingest_service.core.exceptions import IngestError
from metrics_ingest_service.domain.dto import (
    ALL_TASKS,
    BulkMetricDTO,
    IngestStep,
    MetricWrite,
    PartitionKey,
)
from metrics_ingest_service.repositories.backend import MetricsBackend
from metrics_ingest_service.services.partitions import PartitionProvisioner, resolve_partition
from metrics_ingest_service.services.timestamps import TimestampNormalizer
from metrics_ingest_service.services.writer import WriteExecutor

logger = structlog.get_logger(__name__)

# Folded into the partition name / sub-type, never persisted as fields
KEY_FIELDS = ("WorkflowID", "ExperimentID", "workflowID", "experimentID")

PROFILES_PATH = "/mf/profiles"


@dataclass(frozen=True, slots=True)
class IngestReceipt:
    record_id: str
    href: str


@contextmanager
def _stage(step: IngestStep) -> Iterator[None]:
    try:
        yield
    except IngestError as exc:
        if exc.step is None:
            exc.step = step.value
        raise


def strip_key_fields(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in KEY_FIELDS}


class MetricsIngestService:
    """Runs resolve -> provision -> normalize -> write -> link for incoming samples."""

    def __init__(
        self,
        backend: MetricsBackend,
        *,
        base_url: str,
        provisioner: PartitionProvisioner | None = None,
        normalizer: TimestampNormalizer | None = None,
        provision_on_bulk: bool = False,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._provisioner = provisioner or PartitionProvisioner(backend)
        self._normalizer = normalizer or TimestampNormalizer()
        self._writer = WriteExecutor(backend)
        self._provision_on_bulk = provision_on_bulk

    def profile_link(self, key: PartitionKey, experiment_id: str) -> str:
        """Link for a single write; the task segment is left out when absent."""
        segments = [key.workflow]
        if key.task is not None:
            segments.append(key.task)
        segments.append(experiment_id)
        return f"{self._base_url}{PROFILES_PATH}/" + "/".join(segments)

    def bulk_profile_link(self, key: PartitionKey, experiment_id: str) -> str:
        """Link for a bulk write; workflow-wide samples get an ``all`` segment."""
        return f"{self._base_url}{PROFILES_PATH}/{key.workflow}/{key.task or ALL_TASKS}/{experiment_id}"

    def _prepare(self, key: PartitionKey, experiment_id: str, payload: dict[str, Any]) -> MetricWrite:
        document = self._normalizer.normalize(strip_key_fields(payload))
        return MetricWrite(partition=key.name, sub_type=experiment_id, document=document)

    async def ingest_one(
        self,
        workflow_id: str,
        experiment_id: str,
        payload: dict[str, Any],
        *,
        task_id: str | None = None,
    ) -> IngestReceipt:
        with _stage(IngestStep.RESOLVE):
            key = resolve_partition(workflow_id, task_id)
        with _stage(IngestStep.PROVISION):
            await self._provisioner.ensure(key.name)
        with _stage(IngestStep.NORMALIZE):
            item = self._prepare(key, experiment_id, payload)
        with _stage(IngestStep.WRITE):
            record_id = await self._writer.put(item)
        with _stage(IngestStep.LINK):
            href = self.profile_link(key, experiment_id)
        return IngestReceipt(record_id=record_id, href=href)

    async def ingest_many(self, samples: Sequence[BulkMetricDTO]) -> list[str]:
        """Write *samples* in one batch and return one link per sample, in order."""
        keys: list[PartitionKey] = []
        items: list[MetricWrite] = []
        for sample in samples:
            with _stage(IngestStep.RESOLVE):
                key = resolve_partition(sample.workflow_id, sample.task_id)
            with _stage(IngestStep.NORMALIZE):
                payload = sample.payload()
                if sample.task_id is not None:
                    payload["TaskID"] = sample.task_id
                items.append(self._prepare(key, sample.experiment_id, payload))
            keys.append(key)

        if self._provision_on_bulk:
            with _stage(IngestStep.PROVISION):
                for partition in dict.fromkeys(item.partition for item in items):
                    await self._provisioner.ensure(partition)

        with _stage(IngestStep.WRITE):
            record_ids = await self._writer.bulk_put(items)

        # the backend answers in request order, one id per sample
        links: list[str] = []
        with _stage(IngestStep.LINK):
            for key, sample, record_id in zip(keys, samples, record_ids, strict=True):
                links.append(self.bulk_profile_link(key, sample.experiment_id))
                logger.debug("metric_linked", record_id=record_id, partition=key.name)
        return links
