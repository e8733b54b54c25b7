"""lbsync FastAPI application and process entrypoint.

Creates the daemon, wires the API clients, reconciler, update scheduler and
manager during the application lifespan, and exposes health, status and
Prometheus metrics endpoints.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Sequence

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lbsync.api.routes import router
from lbsync.core.config import Settings, load_mappings, load_settings
from lbsync.core.errors import ConfigurationError
from lbsync.core.logging import setup_logging
from lbsync.metrics.prometheus import metrics_router
from lbsync.models.schemas import Mapping
from lbsync.services.cache import ContainerCache
from lbsync.services.discovery_client import DiscoveryClient
from lbsync.services.lb_client import LoadBalancerClient
from lbsync.services.manager import Manager
from lbsync.services.reconciler import Reconciler
from lbsync.services.scheduler import UpdateScheduler

log = logging.getLogger("lbsync")


def _log_crash(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        log.error("Manager stopped unexpectedly", exc_info=task.exception())


def create_app(settings: Settings, mappings: Sequence[Mapping], run_manager: bool = True) -> FastAPI:
    """Build the app. ``run_manager=False`` wires everything without starting the loops."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan.

        Opens the shared HTTPX AsyncClient, builds every component around it,
        and runs the manager. On shutdown the event subscription is closed
        before the client goes away.
        """
        async with httpx.AsyncClient(timeout=settings.request_timeout_s) as client:
            discovery = DiscoveryClient(
                client,
                str(settings.discovery_url),
                settings.discovery_token,
                node_resource_label=settings.node_resource_label,
                reconnect_delay_s=settings.reconnect_delay_s,
                event_queue_size=settings.event_queue_size,
            )
            lb = LoadBalancerClient(
                client,
                str(settings.lb_api_url),
                settings.lb_zone,
                settings.lb_access_key,
                settings.lb_secret_key,
                poll_interval_s=settings.job_poll_interval_s,
                max_polls=settings.job_max_polls,
            )
            cache = ContainerCache(settings.cache_size)
            scheduler = UpdateScheduler(lb, settings.debounce_s, settings.max_debounce_s)
            manager = Manager(
                mappings,
                Reconciler(discovery, lb, cache, settings.filter_by_name, settings.resolve_nics),
                scheduler,
                discovery,
                cache,
                sync_interval_s=settings.sync_interval_s,
                event_statuses=settings.event_statuses,
            )
            app.state.manager = manager
            app.state.scheduler = scheduler
            app.state.cache = cache

            task = None
            if run_manager:
                task = asyncio.create_task(manager.run(), name="manager")
                task.add_done_callback(_log_crash)
            try:
                yield
            finally:
                log.info("Shutting down")
                await manager.stop()
                if task is not None:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="lbsync", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    app.include_router(metrics_router)

    @app.get("/readyz")
    async def readyz(request: Request):
        """Readiness probe: ready once the first full sweep has completed."""
        manager = getattr(request.app.state, "manager", None)
        if manager is None or manager.last_sweep is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        return {"status": "ok"}

    return app


def run() -> None:
    """Console entrypoint: load configuration, then serve until signalled."""
    setup_logging()
    try:
        settings = load_settings()
        mappings = load_mappings(settings)
    except ConfigurationError as e:
        log.error("%s", e)
        raise SystemExit(1)

    log.info("Loaded %d mappings: %s", len(mappings), [m.application.key for m in mappings])
    uvicorn.run(create_app(settings, mappings), host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    run()
