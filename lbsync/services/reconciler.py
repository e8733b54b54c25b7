"""Bring listener backends in line with the running containers of an application."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from prometheus_client import Counter, Histogram

from lbsync.models.schemas import (
    Application,
    Backend,
    Listener,
    NetworkAttachment,
    RunningContainer,
    SavedBackend,
)
from lbsync.services.cache import ContainerCache
from lbsync.services.differ import diff_backends

log = logging.getLogger("lbsync.reconciler")

LISTENER_SYNCS = Counter("lbsync_listener_syncs_total", "Per-listener reconciliations", ["result"])
BACKEND_CHANGES = Counter("lbsync_backend_changes_total", "Backends added or removed", ["op"])
SYNC_LATENCY = Histogram("lbsync_sync_latency_seconds", "Duration of one application sync")
SKIPPED_CONTAINERS = Counter("lbsync_unresolved_containers_total", "Containers without a network attachment")


class Discovery(Protocol):
    async def list_containers(self, instance: str, service: str, port: int = 0) -> list[RunningContainer]: ...
    async def describe_network_inventory(self, node_ids) -> list[NetworkAttachment]: ...


class Backends(Protocol):
    async def list_backends(self, listener: Listener) -> list[SavedBackend]: ...
    async def add_backends(self, listener: Listener, backends: Sequence[Backend]) -> None: ...
    async def remove_backends(self, listener: Listener, backends: Sequence[SavedBackend]) -> None: ...
    async def describe_nics(self) -> list[NetworkAttachment]: ...


def build_backends(
    application: Application,
    containers: Sequence[RunningContainer],
    inventory: Sequence[NetworkAttachment],
) -> list[Backend]:
    """Map running containers to backends.

    A container on a labeled node with the application port published
    becomes ``(node resource, host port)``. Otherwise a container whose IP
    belongs to a known NIC becomes ``(instance, nic, application port)``.
    Anything else has no attachment yet and is skipped.
    """
    by_node = {a.node_id: a for a in inventory if a.node_id}
    by_ip = {a.private_ip: a for a in inventory if a.private_ip and a.nic_id}

    backends: list[Backend] = []
    for c in containers:
        name = application.backend_name(c.sequence or c.id[:12])
        node = by_node.get(c.node_id) if c.node_id else None
        if node is not None and c.host_port:
            backends.append(Backend(resource_id=node.resource_id, port=c.host_port, weight=application.weight, name=name))
            continue
        nic = by_ip.get(c.ip_address) if c.ip_address else None
        if nic is not None:
            backends.append(
                Backend(resource_id=nic.resource_id, nic_id=nic.nic_id, port=application.port, weight=application.weight, name=name)
            )
            continue
        SKIPPED_CONTAINERS.inc()
        log.debug("Skipping container %s of %s: no network attachment yet", c.id, application.key)
    return backends


class Reconciler:
    """Computes desired backends per application and applies the delta per listener.

    Does not activate listeners; ``sync`` returns the listeners that changed
    so the caller can hand them to the update scheduler.
    """

    def __init__(
        self,
        discovery: Discovery,
        lb: Backends,
        cache: Optional[ContainerCache] = None,
        filter_by_name: bool = True,
        resolve_nics: bool = False,
    ):
        self._discovery = discovery
        self._lb = lb
        self._cache = cache
        self._filter_by_name = filter_by_name
        self._resolve_nics = resolve_nics

    async def desired_backends(self, application: Application) -> list[Backend]:
        containers = await self._discovery.list_containers(application.instance, application.service, application.port)
        if self._cache is not None:
            for c in containers:
                self._cache.remember(c.id, application)
        inventory = await self._discovery.describe_network_inventory([c.node_id for c in containers if c.node_id])
        if self._resolve_nics and containers:
            inventory = [*inventory, *await self._lb.describe_nics()]
        return build_backends(application, containers, inventory)

    async def sync(self, application: Application, listeners: Sequence[Listener]) -> list[Listener]:
        """Reconcile every listener of one application; return those that changed.

        Listeners are processed concurrently. A failing listener is logged
        and left out of the result without affecting its siblings.
        """
        with SYNC_LATENCY.time():
            desired = await self.desired_backends(application)
            log.info(
                "%s: %d desired backends %s",
                application.key, len(desired), [f"{b.resource_id}:{b.port}" for b in desired],
            )
            results = await asyncio.gather(
                *(self._sync_listener(application, listener, desired) for listener in listeners),
                return_exceptions=True,
            )

        changed: list[Listener] = []
        for listener, result in zip(listeners, results):
            if isinstance(result, BaseException):
                LISTENER_SYNCS.labels(result="error").inc()
                log.error("%s: reconciling listener %s failed: %s", application.key, listener, result, exc_info=result)
            elif result:
                LISTENER_SYNCS.labels(result="changed").inc()
                changed.append(listener)
            else:
                LISTENER_SYNCS.labels(result="unchanged").inc()
        if changed:
            log.info("%s: changed listeners %s", application.key, [str(x) for x in changed])
        return changed

    async def _sync_listener(self, application: Application, listener: Listener, desired: Sequence[Backend]) -> bool:
        actual = await self._lb.list_backends(listener)
        name_filter = application.owns_backend if self._filter_by_name else None
        delta = diff_backends(desired, actual, name_filter)
        if not delta.changed:
            log.debug("%s: listener %s up to date", application.key, listener)
            return False

        log.info(
            "%s: listener %s add %s remove %s",
            application.key,
            listener,
            [f"{b.resource_id}:{b.port}" for b in delta.to_add],
            [f"{b.backend_id}({b.resource_id}:{b.port})" for b in delta.to_remove],
        )
        added, removed = await asyncio.gather(
            self._lb.add_backends(listener, delta.to_add),
            self._lb.remove_backends(listener, delta.to_remove),
            return_exceptions=True,
        )
        applied = False
        for op, backends, result in (("add", delta.to_add, added), ("remove", delta.to_remove, removed)):
            if isinstance(result, BaseException):
                continue
            if backends:
                applied = True
                BACKEND_CHANGES.labels(op=op).inc(len(backends))

        failures = [r for r in (added, removed) if isinstance(r, BaseException)]
        if failures and not applied:
            raise failures[0]
        for failure in failures:
            # the other half landed and still needs activation
            LISTENER_SYNCS.labels(result="partial").inc()
            log.error("%s: listener %s partially updated: %s", application.key, listener, failure, exc_info=failure)
        return True
