"""Drives reconciliation from a periodic sweep and from lifecycle events."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol, Sequence

from prometheus_client import Counter, Gauge

from lbsync.models.schemas import Application, Event, Listener, Mapping, RunningContainer
from lbsync.services.cache import ContainerCache
from lbsync.services.reconciler import Reconciler
from lbsync.services.scheduler import UpdateScheduler
from lbsync.services.subscriber import EventSubscription, Pattern, status_patterns

log = logging.getLogger("lbsync.manager")

EVENTS = Counter("lbsync_events_total", "Lifecycle events handled", ["resolution"])
SWEEPS = Counter("lbsync_sweeps_total", "Full reconciliation sweeps", ["result"])
LAST_SWEEP = Gauge("lbsync_last_sweep_timestamp_seconds", "Unix time of the last completed sweep")


class ContainerLookup(Protocol):
    async def describe_container(self, container_id: str) -> Optional[RunningContainer]: ...
    def subscribe(self, patterns: Sequence[Pattern]) -> EventSubscription: ...


class Manager:
    """
    Owns the mapping set and feeds the reconciler and the update scheduler.

    The periodic sweep and the event loop run concurrently; both go through
    ``sync_mapping``, which is idempotent.
    """

    def __init__(
        self,
        mappings: Sequence[Mapping],
        reconciler: Reconciler,
        scheduler: UpdateScheduler,
        discovery: ContainerLookup,
        cache: ContainerCache,
        sync_interval_s: float = 60.0,
        event_statuses: Sequence[str] = ("die", "restart", "start", "stop", "destroy", "oom"),
    ):
        self.mappings = list(mappings)
        self._reconciler = reconciler
        self._scheduler = scheduler
        self._discovery = discovery
        self._cache = cache
        self._sync_interval_s = sync_interval_s
        self._event_statuses = tuple(event_statuses)
        self._subscription: Optional[EventSubscription] = None
        self._tasks: list[asyncio.Task[None]] = []
        self.last_sweep: Optional[float] = None
        self.events_handled = 0

    async def sync_mapping(self, mapping: Mapping) -> list[Listener]:
        """Reconcile one mapping and queue its changed listeners for activation."""
        changed = await self._reconciler.sync(mapping.application, mapping.listeners)
        if changed:
            self._scheduler.enqueue(changed)
        return changed

    async def sweep(self) -> None:
        """Reconcile every mapping; a failing mapping does not stop the others."""
        results = await asyncio.gather(*(self.sync_mapping(m) for m in self.mappings), return_exceptions=True)
        failures = 0
        for mapping, result in zip(self.mappings, results):
            if isinstance(result, BaseException):
                failures += 1
                log.error("Sync of %s failed: %s", mapping.application.key, result, exc_info=result)
        SWEEPS.labels(result="partial" if failures else "ok").inc()
        self.last_sweep = time.time()
        LAST_SWEEP.set(self.last_sweep)
        log.info("Sweep finished: %d mappings, %d failed", len(self.mappings), failures)

    def _mapping_for(self, application: Application) -> Optional[Mapping]:
        return next((m for m in self.mappings if m.application == application), None)

    async def resolve_event(self, event: Event) -> Optional[Mapping]:
        """Find the mapping an event's container belongs to.

        Live lookup first; when the platform no longer knows the container
        (typical for destroy events) fall back to the container cache.
        """
        container = await self._discovery.describe_container(event.container_id)
        if container is not None:
            mapping = next((m for m in self.mappings if m.application.owns(container.labels)), None)
            EVENTS.labels(resolution="live" if mapping else "unmapped").inc()
            return mapping

        application = self._cache.pop(event.container_id)
        if application is None:
            EVENTS.labels(resolution="unknown").inc()
            return None
        EVENTS.labels(resolution="cache").inc()
        return self._mapping_for(application)

    async def handle_event(self, event: Event) -> None:
        """Resolve and reconcile for one event. Errors are logged, never raised."""
        self.events_handled += 1
        log.info("Event %s for container %s (%s)", event.status, event.container_id, event.application_key or "?")
        try:
            mapping = await self.resolve_event(event)
            if mapping is None:
                log.debug("Container %s matches no mapping, ignoring", event.container_id)
                return
            await self.sync_mapping(mapping)
        except Exception as e:
            EVENTS.labels(resolution="error").inc()
            log.error("Handling event %s for %s failed: %s", event.status, event.container_id, e, exc_info=e)

    async def listen(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            await self.handle_event(event)
        log.info("Event subscription closed")

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self._sync_interval_s)
            try:
                await self.sweep()
            except Exception as e:
                log.error("Sweep failed: %s", e, exc_info=e)

    async def run(self) -> None:
        """Initial sweep, then periodic sweeps and event handling until stopped."""
        self._scheduler.start()
        self._subscription = self._discovery.subscribe(status_patterns(self._event_statuses))
        self._subscription.start()
        await self.sweep()
        self._tasks = [
            asyncio.create_task(self._periodic(), name="periodic-sweep"),
            asyncio.create_task(self.listen(self._subscription), name="event-listener"),
        ]
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        """Close the event subscription first, then stop the loops and the scheduler."""
        if self._subscription is not None:
            await self._subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._scheduler.stop()
