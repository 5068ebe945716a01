"""Per-request service construction from application state."""
from __future__ import annotations

from aiohttp import web

from metrics_ingest_service.repositories.backend import MetricsBackend
from metrics_ingest_service.services.ingestion import MetricsIngestService
from metrics_ingest_service.services.partitions import PartitionProvisioner
from metrics_ingest_service.services.timestamps import TimestampNormalizer
from metrics_ingest_service.settings import Settings

BACKEND_KEY = web.AppKey("backend", MetricsBackend)
PROVISIONER_KEY = web.AppKey("provisioner", PartitionProvisioner)
NORMALIZER_KEY = web.AppKey("normalizer", TimestampNormalizer)
SETTINGS_KEY = web.AppKey("settings", Settings)


def get_ingest_service(request: web.Request) -> MetricsIngestService:
    app = request.app
    cfg = app[SETTINGS_KEY]
    # The provisioner outlives requests so its per-partition locks are shared.
    return MetricsIngestService(
        app[BACKEND_KEY],
        base_url=str(cfg.public_base_url),
        provisioner=app[PROVISIONER_KEY],
        normalizer=app[NORMALIZER_KEY],
        provision_on_bulk=cfg.provision_on_bulk,
    )
