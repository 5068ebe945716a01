"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from metrics_ingest_service.api.middleware import create_trace_middleware, error_middleware
from metrics_ingest_service.api.routes.metrics import routes as metrics_routes
from metrics_ingest_service.logging_config import configure_logging
from metrics_ingest_service.repositories.backend import ElasticsearchBackend, MetricsBackend
from metrics_ingest_service.services.dependencies import (
    BACKEND_KEY,
    NORMALIZER_KEY,
    PROVISIONER_KEY,
    SETTINGS_KEY,
)
from metrics_ingest_service.services.partitions import PartitionProvisioner
from metrics_ingest_service.services.timestamps import TimestampNormalizer
from metrics_ingest_service.settings import Settings, settings

# Configure structured logging
configure_logging()


async def healthcheck(request: web.Request) -> web.Response:
    cfg = request.app[SETTINGS_KEY]
    return web.json_response({"status": "ok", "service": cfg.app_name, "env": cfg.env})


def _install_backend(app: web.Application, backend: MetricsBackend) -> None:
    app[BACKEND_KEY] = backend
    app[PROVISIONER_KEY] = PartitionProvisioner(
        backend, single_flight=app[SETTINGS_KEY].partition_single_flight
    )


async def close_backend(app: web.Application) -> None:
    backend = app.get(BACKEND_KEY)
    if backend is not None:
        await backend.close()


def create_app(backend: MetricsBackend | None = None, cfg: Settings | None = None) -> web.Application:
    """Create the application; *backend* replaces the Elasticsearch client (tests)."""
    cfg = cfg or settings
    app = web.Application(middlewares=[create_trace_middleware(cfg.app_name), error_middleware])
    app[SETTINGS_KEY] = cfg
    app[NORMALIZER_KEY] = TimestampNormalizer()
    _install_backend(app, backend or ElasticsearchBackend.from_settings(cfg))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*",
            )
            for origin in cfg.cors_allowed_origins
        },
    )

    app.router.add_get("/health", healthcheck)
    app.add_routes(metrics_routes)

    app.on_cleanup.append(close_backend)

    for route in list(app.router.routes()):
        cors.add(route)

    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port, access_log=None)


if __name__ == "__main__":
    main()
