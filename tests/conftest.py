import asyncio
from typing import Optional

import pytest

from lbsync.core.errors import TransientNetworkError
from lbsync.models.schemas import (
    INSTANCE_LABEL,
    SEQUENCE_LABEL,
    SERVICE_LABEL,
    Application,
    Listener,
    Mapping,
    NetworkAttachment,
    RunningContainer,
    SavedBackend,
)
from lbsync.services.subscriber import EventSubscription


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_container(cid: str, node_id: Optional[str], host_port: int = 8080, seq: str = "1",
                   instance: str = "web", service: str = "api", ip: Optional[str] = None) -> RunningContainer:
    return RunningContainer(
        id=cid,
        node_id=node_id,
        ip_address=ip,
        host_port=host_port,
        sequence=seq,
        labels={INSTANCE_LABEL: instance, SERVICE_LABEL: service, SEQUENCE_LABEL: seq},
    )


def saved(backend_id: str, resource_id: str, port: int = 8080, name: str = "web-api-1",
          policy_id: Optional[str] = None, weight: int = 1) -> SavedBackend:
    return SavedBackend(backend_id=backend_id, resource_id=resource_id, port=port, name=name,
                        policy_id=policy_id, weight=weight)


class FakeDiscovery:
    """In-memory orchestration platform."""

    def __init__(self):
        self.containers: dict[tuple[str, str], list[RunningContainer]] = {}
        self.nodes: dict[str, str] = {}  # node_id -> resource_id
        self.failing: set[tuple[str, str]] = set()
        self.lookup_error: Optional[Exception] = None
        self.events: asyncio.Queue = asyncio.Queue()
        self.subscriptions: list[EventSubscription] = []

    def run(self, *containers: RunningContainer, instance: str = "web", service: str = "api") -> None:
        self.containers[(instance, service)] = list(containers)

    async def list_containers(self, instance, service, port=0):
        if (instance, service) in self.failing:
            raise TransientNetworkError("orchestration API down")
        return list(self.containers.get((instance, service), []))

    async def describe_container(self, container_id):
        if self.lookup_error is not None:
            raise self.lookup_error
        for containers in self.containers.values():
            for c in containers:
                if c.id == container_id:
                    return c
        return None

    async def describe_network_inventory(self, node_ids):
        return [NetworkAttachment(resource_id=self.nodes[n], node_id=n) for n in node_ids if n in self.nodes]

    async def _stream(self):
        while True:
            yield await self.events.get()

    def subscribe(self, patterns):
        sub = EventSubscription(self._stream, patterns, maxsize=10, reconnect_delay_s=0.01)
        self.subscriptions.append(sub)
        return sub


class FakeLB:
    """In-memory load balancer recording every mutation and activation."""

    def __init__(self):
        self.backends: dict[str, list[SavedBackend]] = {}
        self.nics: list[NetworkAttachment] = []
        self.added: list[tuple[str, list]] = []
        self.removed: list[tuple[str, list]] = []
        self.activations: list[list[str]] = []
        self.failing_listeners: set[str] = set()
        self.failing_adds: set[str] = set()
        self.fail_activations = 0
        self.job_gate: Optional[asyncio.Event] = None
        self._seq = 0

    async def list_backends(self, listener: Listener):
        if listener.listener_id in self.failing_listeners:
            raise TransientNetworkError(f"listener {listener.listener_id} unreachable")
        return [b for b in self.backends.get(listener.listener_id, []) if b.policy_id == listener.policy_id]

    async def add_backends(self, listener, backends):
        if not backends:
            return
        if listener.listener_id in self.failing_adds:
            raise TransientNetworkError(f"adding backends to {listener.listener_id} failed")
        self.added.append((listener.listener_id, list(backends)))
        for b in backends:
            self._seq += 1
            self.backends.setdefault(listener.listener_id, []).append(
                SavedBackend(backend_id=f"lbb-{self._seq}", policy_id=listener.policy_id, **b.model_dump())
            )

    async def remove_backends(self, listener, backends):
        if not backends:
            return
        self.removed.append((listener.listener_id, list(backends)))
        gone = {b.backend_id for b in backends}
        self.backends[listener.listener_id] = [
            b for b in self.backends.get(listener.listener_id, []) if b.backend_id not in gone
        ]

    async def describe_nics(self):
        return list(self.nics)

    async def activate_listeners(self, listener_ids):
        self.activations.append(list(listener_ids))
        return f"j-{len(self.activations)}"

    async def wait_for_job(self, job_id):
        if self.job_gate is not None:
            await self.job_gate.wait()
        if self.fail_activations:
            self.fail_activations -= 1
            raise TransientNetworkError(f"{job_id} poll failed")


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def lb():
    return FakeLB()


@pytest.fixture
def web_api():
    return Mapping(
        application=Application(instance="web", service="api", port=8080),
        listeners=[Listener(listener_id="L1")],
    )
