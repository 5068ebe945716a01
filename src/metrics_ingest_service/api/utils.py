"""API utilities."""
from __future__ import annotations

from typing import Any

from aiohttp import web

from metrics_ingest_service.core.exceptions import IngestError, InvalidSampleError


async def read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidSampleError("Invalid JSON payload") from exc


def error_response(error: IngestError) -> web.Response:
    return web.json_response(error.to_payload(), status=error.status_code)
