from __future__ import annotations

import asyncio

import pytest

from metrics_ingest_service.core.exceptions import (
    BackendError,
    BackendUnavailableError,
    PartitionCreateFailedError,
    WriteFailedError,
)
from metrics_ingest_service.domain.dto import BulkItemResult, BulkMetricDTO
from metrics_ingest_service.services.ingestion import MetricsIngestService, strip_key_fields
from metrics_ingest_service.services.partitions import PartitionProvisioner

from conftest import BASE_URL, FakeBackend


def _service(backend, normalizer, **kwargs) -> MetricsIngestService:
    return MetricsIngestService(backend, base_url=BASE_URL, normalizer=normalizer, **kwargs)


def _bulk(*samples: dict) -> list[BulkMetricDTO]:
    return [BulkMetricDTO.model_validate(sample) for sample in samples]


def test_strip_key_fields():
    payload = {"WorkflowID": "ms2", "ExperimentID": "e1", "workflowID": "x", "experimentID": "y", "power": 1}
    assert strip_key_fields(payload) == {"power": 1}


# ---------------------------------------------------------------------------
# Single write
# ---------------------------------------------------------------------------
async def test_ingest_one_runs_pipeline_in_order(backend, normalizer):
    service = _service(backend, normalizer)

    receipt = await service.ingest_one(
        "MS2", "AVNXMXcvGMPeuCn4bMe0", {"@timestamp": "2016-02-15T12:42:22.000", "GPU0:power": "152.427"}, task_id="T2.1"
    )

    assert [op for op, _ in backend.calls] == ["exists", "create", "write_one"]
    assert receipt.record_id == "rec-1"
    assert receipt.href == f"{BASE_URL}/mf/profiles/ms2/t2.1/AVNXMXcvGMPeuCn4bMe0"
    partition, sub_type, document = backend.documents[0]
    assert partition == "ms2_t2.1"
    assert sub_type == "AVNXMXcvGMPeuCn4bMe0"
    assert document["server_timestamp"] == "2016-02-15T12:43:50.123"
    assert document["local_timestamp"] == document["server_timestamp"]


async def test_ingest_one_without_task(backend, normalizer):
    service = _service(backend, normalizer)

    receipt = await service.ingest_one("hpcfapix", "e1", {"power": 10})

    assert backend.documents[0][0] == "hpcfapix_all"
    assert receipt.href == f"{BASE_URL}/mf/profiles/hpcfapix/e1"


async def test_ingest_one_strips_key_fields(backend, normalizer):
    service = _service(backend, normalizer)

    await service.ingest_one("ms2", "e1", {"WorkflowID": "ms2", "ExperimentID": "e1", "power": 10})

    document = backend.documents[0][2]
    assert "WorkflowID" not in document
    assert "ExperimentID" not in document
    assert document["power"] == 10


async def test_ingest_one_survives_failed_partition_create(backend, normalizer):
    backend.create_error = PartitionCreateFailedError("boom")
    service = _service(backend, normalizer)

    receipt = await service.ingest_one("ms2", "e1", {"power": 10}, task_id="t1")

    assert receipt.record_id == "rec-1"


async def test_ingest_one_existing_partition_is_not_recreated(normalizer):
    backend = FakeBackend(existing=["ms2_t1"])
    service = _service(backend, normalizer)

    await service.ingest_one("ms2", "e1", {"power": 10}, task_id="t1")

    assert backend.count("create") == 0


async def test_ingest_one_write_failure_names_step(backend, normalizer):
    backend.write_error = BackendError("mapper_parsing_exception", backend_status=400)
    service = _service(backend, normalizer)

    with pytest.raises(WriteFailedError) as excinfo:
        await service.ingest_one("ms2", "e1", {"power": 10})

    assert excinfo.value.to_payload()["step"] == "write"


async def test_ingest_one_unavailable_during_check_names_step(backend, normalizer):
    backend.exists_error = BackendUnavailableError()
    service = _service(backend, normalizer)

    with pytest.raises(BackendUnavailableError) as excinfo:
        await service.ingest_one("ms2", "e1", {"power": 10})

    assert excinfo.value.step == "provision"
    assert backend.count("write_one") == 0


async def test_ingest_one_converts_epoch_primary_timestamp(backend, normalizer):
    service = _service(backend, normalizer)

    await service.ingest_one("ms2", "e1", {"@timestamp": 1455540166000, "power": 10})

    assert backend.documents[0][2]["@timestamp"] == "2016-02-15T12:42:46.000"


async def test_concurrent_first_writers_both_succeed(normalizer):
    backend = FakeBackend(delay=0.01)
    backend.reject_duplicate_create = True
    provisioner = PartitionProvisioner(backend, single_flight=False)
    service = _service(backend, normalizer, provisioner=provisioner)

    receipts = await asyncio.gather(
        service.ingest_one("new", "e1", {"power": 1}, task_id="t1"),
        service.ingest_one("new", "e2", {"power": 2}, task_id="t1"),
    )

    assert backend.create_successes == 1
    assert {r.record_id for r in receipts} == {"rec-1", "rec-2"}
    assert [doc[0] for doc in backend.documents] == ["new_t1", "new_t1"]


# ---------------------------------------------------------------------------
# Bulk write
# ---------------------------------------------------------------------------
async def test_ingest_many_scenario(backend, normalizer):
    service = _service(backend, normalizer)
    samples = _bulk(
        {
            "WorkflowID": "ms2",
            "ExperimentID": "e1",
            "TaskID": "t1",
            "@timestamp": "2016-02-15T12:43:48.749",
            "power": "168.5",
        }
    )

    links = await service.ingest_many(samples)

    assert links == [f"{BASE_URL}/mf/profiles/ms2/t1/e1"]
    partition, sub_type, document = backend.documents[0]
    assert (partition, sub_type) == ("ms2_t1", "e1")
    assert "WorkflowID" not in document
    assert "ExperimentID" not in document
    assert document["TaskID"] == "t1"
    assert document["@timestamp"] == "2016-02-15T12:43:48.749"


async def test_ingest_many_skips_provisioning_by_default(backend, normalizer):
    service = _service(backend, normalizer)

    await service.ingest_many(_bulk({"WorkflowID": "ms2", "ExperimentID": "e1", "power": 1}))

    assert [op for op, _ in backend.calls] == ["write_bulk"]


async def test_ingest_many_provisions_each_partition_once_when_enabled(backend, normalizer):
    service = _service(backend, normalizer, provision_on_bulk=True)
    samples = _bulk(
        {"WorkflowID": "ms2", "ExperimentID": "e1", "TaskID": "t1", "power": 1},
        {"WorkflowID": "MS2", "ExperimentID": "e2", "TaskID": "T1", "power": 2},
        {"WorkflowID": "ms2", "ExperimentID": "e3", "power": 3},
    )

    await service.ingest_many(samples)

    assert backend.calls == [
        ("exists", "ms2_t1"),
        ("create", "ms2_t1"),
        ("exists", "ms2_all"),
        ("create", "ms2_all"),
        ("write_bulk", "3"),
    ]


async def test_ingest_many_links_follow_input_order(backend, normalizer):
    service = _service(backend, normalizer)
    samples = _bulk(
        {"WorkflowID": "ms2", "ExperimentID": "AVUWnydqGMPeuCn4l-cj", "TaskID": "t2.1", "GPU1:power": "168.519"},
        {"WorkflowID": "ms2", "ExperimentID": "AVNXMXcvGMPeuCn4bMe0", "GPU0:power": "152.427"},
    )

    links = await service.ingest_many(samples)

    assert links == [
        f"{BASE_URL}/mf/profiles/ms2/t2.1/AVUWnydqGMPeuCn4l-cj",
        f"{BASE_URL}/mf/profiles/ms2/all/AVNXMXcvGMPeuCn4bMe0",
    ]


async def test_ingest_many_converts_epoch_local_timestamp(backend, normalizer):
    service = _service(backend, normalizer)

    await service.ingest_many(
        _bulk({"WorkflowID": "ms2", "ExperimentID": "e1", "local_timestamp": "1455540166000", "power": 1})
    )

    assert backend.documents[0][2]["local_timestamp"] == "2016-02-15T12:42:46.000"


async def test_ingest_many_item_failure_fails_whole_batch(backend, normalizer):
    backend.bulk_failures = {0: "mapper_parsing_exception"}
    service = _service(backend, normalizer)

    with pytest.raises(WriteFailedError) as excinfo:
        await service.ingest_many(
            _bulk(
                {"WorkflowID": "ms2", "ExperimentID": "e1", "power": 1},
                {"WorkflowID": "ms2", "ExperimentID": "e2", "power": 2},
            )
        )

    assert excinfo.value.step == "write"
    assert len(excinfo.value.items) == 2


async def test_ingest_many_links_need_one_record_per_sample(backend, normalizer, monkeypatch):
    async def one_result(items):
        return [BulkItemResult(record_id="rec-1", status=201)]

    monkeypatch.setattr(backend, "write_bulk", one_result)
    service = _service(backend, normalizer)

    with pytest.raises(WriteFailedError) as excinfo:
        await service.ingest_many(
            _bulk(
                {"WorkflowID": "ms2", "ExperimentID": "e1", "power": 1},
                {"WorkflowID": "ms2", "ExperimentID": "e2", "power": 2},
            )
        )

    assert excinfo.value.step == "write"


async def test_ingest_many_empty_batch(backend, normalizer):
    assert await _service(backend, normalizer).ingest_many([]) == []
    assert backend.calls == []
