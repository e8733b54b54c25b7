"""Operational API for the sync daemon.

Read-only views of the mapping set, the update scheduler and the container
cache, plus an endpoint to reconcile one mapping on demand.
"""
from __future__ import annotations

from logging import getLogger

from fastapi import APIRouter, HTTPException, Request

from lbsync.services.manager import Manager

log = getLogger("lbsync.api")
router = APIRouter()


def _get_manager(request: Request) -> Manager:
    """Return the Manager placed on ``app.state`` by the application lifespan."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Manager not started")
    return manager


@router.get("/health")
async def health_check():
    """Liveness endpoint."""
    return {"status": "OK"}


@router.get("/mappings")
async def list_mappings(request: Request):
    manager = _get_manager(request)
    return [
        {
            "index": i,
            "application": m.application.model_dump(),
            "listeners": [listener.model_dump() for listener in m.listeners],
        }
        for i, m in enumerate(manager.mappings)
    ]


@router.post("/mappings/{index}/sync")
async def sync_mapping(index: int, request: Request):
    """Reconcile one mapping now; changed listeners are queued for activation."""
    manager = _get_manager(request)
    if not 0 <= index < len(manager.mappings):
        raise HTTPException(status_code=404, detail="mapping not found")
    mapping = manager.mappings[index]
    log.info("Manual sync of %s requested", mapping.application.key)
    changed = await manager.sync_mapping(mapping)
    return {"application": mapping.application.key, "changed": [listener.listener_id for listener in changed]}


@router.get("/scheduler")
async def scheduler_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not started")
    return {"state": scheduler.state.value, "pending": scheduler.pending, "jobs": scheduler.jobs}


@router.get("/status")
async def status(request: Request):
    manager = _get_manager(request)
    cache = getattr(request.app.state, "cache", None)
    return {
        "mappings": len(manager.mappings),
        "last_sweep": manager.last_sweep,
        "events_handled": manager.events_handled,
        "cached_containers": len(cache) if cache is not None else 0,
    }
