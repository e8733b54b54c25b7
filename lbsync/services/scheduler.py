"""Coalescing scheduler for listener activation jobs.

Activating listeners is a slow, rate-limited job on the load balancer, so
change signals are queued and drained in batches by one coordinating task:

    IDLE --enqueue--> DEBOUNCE --quiet for debounce_s--> RUNNING
    RUNNING --job ends, queue empty--> IDLE
    RUNNING --job ends, queue not empty--> DEBOUNCE

The queue is snapshotted and cleared when a job is submitted, so listeners
queued while it runs wait for the next cycle. ``max_debounce_s`` caps how
long a continuous stream of enqueues can postpone a job.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, Optional, Protocol, Union

from prometheus_client import Counter, Gauge

from lbsync.models.schemas import Listener, SchedulerState

log = logging.getLogger("lbsync.scheduler")

ACTIVATION_JOBS = Counter("lbsync_activation_jobs_total", "Listener activation jobs", ["result"])
PENDING_LISTENERS = Gauge("lbsync_pending_listeners", "Listeners waiting for activation")


class Activator(Protocol):
    async def activate_listeners(self, listener_ids: Iterable[str]) -> Optional[str]: ...
    async def wait_for_job(self, job_id: str) -> None: ...


class UpdateScheduler:
    """Debounces and batches listener activations; one job in flight at most."""

    def __init__(
        self,
        lb: Activator,
        debounce_s: float = 1.0,
        max_debounce_s: float = 10.0,
        retry_delay_s: float = 5.0,
    ):
        self._lb = lb
        self._debounce_s = debounce_s
        self._max_debounce_s = max_debounce_s
        self._retry_delay_s = retry_delay_s
        self._pending: dict[str, None] = {}
        self._first_at: Optional[float] = None
        self._last_at = 0.0
        self._state = SchedulerState.IDLE
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task[None]] = None
        self.jobs = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="update-scheduler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def join(self) -> None:
        """Wait until the queue is drained and no job is running."""
        await self._idle.wait()

    def enqueue(self, listeners: Iterable[Union[Listener, str]]) -> None:
        """Queue listeners for activation. Never blocks; never drops."""
        ids = [x.listener_id if isinstance(x, Listener) else str(x) for x in listeners]
        if not ids:
            return
        self._add(ids)
        if self._state is SchedulerState.IDLE:
            self._state = SchedulerState.DEBOUNCE
        else:
            log.info("LB update queued behind %s: %s", self._state.value, ids)
        self._wakeup.set()

    def _add(self, ids: Iterable[str]) -> None:
        now = time.monotonic()
        for listener_id in ids:
            self._pending.setdefault(listener_id, None)
        if self._first_at is None:
            self._first_at = now
        self._last_at = now
        self._idle.clear()
        PENDING_LISTENERS.set(len(self._pending))

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if not self._pending:
                continue

            await self._debounce()
            ids = list(self._pending)
            self._pending.clear()
            self._first_at = None
            PENDING_LISTENERS.set(0)
            self._state = SchedulerState.RUNNING

            try:
                await self._activate(ids)
            except Exception as e:
                ACTIVATION_JOBS.labels(result="error").inc()
                log.error("LB update for %s failed, retrying in %.1fs: %s", ids, self._retry_delay_s, e)
                self._add(ids)
                await asyncio.sleep(self._retry_delay_s)

            if self._pending:
                self._state = SchedulerState.DEBOUNCE
                self._wakeup.set()
            else:
                self._state = SchedulerState.IDLE
                self._idle.set()

    async def _debounce(self) -> None:
        while True:
            deadline = self._last_at + self._debounce_s
            if self._first_at is not None:
                deadline = min(deadline, self._first_at + self._max_debounce_s)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    async def _activate(self, ids: list[str]) -> None:
        log.info("LB update started for listeners %s", ids)
        job_id = await self._lb.activate_listeners(ids)
        if job_id is not None:
            await self._lb.wait_for_job(job_id)
        self.jobs += 1
        ACTIVATION_JOBS.labels(result="done").inc()
        log.info("LB update finished for listeners %s (job %s)", ids, job_id)
