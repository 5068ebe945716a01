"""Metric ingest endpoints."""
from __future__ import annotations

from typing import Any

from aiohttp import web
from pydantic import TypeAdapter, ValidationError

from metrics_ingest_service.api.utils import error_response, read_json
from metrics_ingest_service.core.exceptions import IngestError, InvalidSampleError
from metrics_ingest_service.domain.dto import BulkMetricDTO, metric_payload_adapter
from metrics_ingest_service.services.dependencies import SETTINGS_KEY, get_ingest_service

routes = web.RouteTableDef()

_bulk_adapter: TypeAdapter[list[BulkMetricDTO]] = TypeAdapter(list[BulkMetricDTO])


def _parse_bulk(body: Any, max_samples: int) -> list[BulkMetricDTO]:
    if not isinstance(body, list):
        raise InvalidSampleError("JSON body must be an array of metrics")
    if len(body) > max_samples:
        raise InvalidSampleError(f"At most {max_samples} metrics per request")
    try:
        return _bulk_adapter.validate_python(body)
    except ValidationError as exc:
        error = exc.errors(include_url=False)[0]
        location = ".".join(str(part) for part in error["loc"])
        raise InvalidSampleError(f"Invalid metric at {location}: {error['msg']}") from exc


def _parse_single(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise InvalidSampleError("JSON body must be an object")
    try:
        return metric_payload_adapter.validate_python(body)
    except ValidationError as exc:
        fields = ", ".join(sorted({str(error["loc"][0]) for error in exc.errors()}))
        raise InvalidSampleError(f"Metric values must be strings or numbers: {fields}") from exc


@routes.post("/v1/mf/metrics")
async def post_bulk_metrics(request: web.Request) -> web.Response:
    """Store many metrics at once; answers with one profile link per metric."""
    try:
        body = await read_json(request)
        samples = _parse_bulk(body, request.app[SETTINGS_KEY].bulk_max_samples)
        links = await get_ingest_service(request).ingest_many(samples)
    except IngestError as exc:
        return error_response(exc)
    return web.json_response(links)


async def _post_single_metric(request: web.Request, task_id: str | None) -> web.Response:
    workflow_id = request.match_info["workflow_id"]
    experiment_id = request.match_info["experiment_id"]
    try:
        body = await read_json(request)
        payload = _parse_single(body)
        receipt = await get_ingest_service(request).ingest_one(
            workflow_id, experiment_id, payload, task_id=task_id
        )
    except IngestError as exc:
        return error_response(exc)
    return web.json_response({receipt.record_id: {"href": receipt.href}})


@routes.post("/v1/mf/metrics/{workflow_id}/{task_id}/{experiment_id}")
async def post_task_metric(request: web.Request) -> web.Response:
    return await _post_single_metric(request, request.match_info["task_id"])


@routes.post("/v1/mf/metrics/{workflow_id}/{experiment_id}")
async def post_workflow_metric(request: web.Request) -> web.Response:
    """Single metric without a task in the path; ``?task=`` may still name one."""
    return await _post_single_metric(request, request.rel_url.query.get("task") or None)
