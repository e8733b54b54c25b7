"""HTTP client wrapper for the container orchestration API.

Lists the running containers of an application, looks containers and nodes
up by id, and streams lifecycle events over server-sent events. Includes
basic Prometheus metrics for request counts and latency.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

import httpx
from httpx_sse import SSEError, aconnect_sse
from prometheus_client import Counter, Histogram

from lbsync.core.errors import NotFoundError, TransientNetworkError, UnexpectedResponse
from lbsync.models.schemas import (
    INSTANCE_LABEL,
    SEQUENCE_LABEL,
    SERVICE_LABEL,
    NetworkAttachment,
    RunningContainer,
)
from lbsync.services.subscriber import EventSubscription, Pattern

log = logging.getLogger("lbsync.discovery")

DISCOVERY_REQUESTS = Counter("lbsync_discovery_requests_total", "Orchestration API requests", ["status"])
DISCOVERY_LATENCY = Histogram("lbsync_discovery_latency_seconds", "Orchestration API request latency seconds")
DISCOVERY_EVENTS = Counter("lbsync_discovery_stream_events_total", "Raw events read from the orchestration stream")

API_KEY_HEADER = "Csphere-Api-Key"


def _labels(payload: dict[str, Any]) -> dict[str, str]:
    labels = payload.get("Labels")
    if labels is None:
        labels = (payload.get("Config") or {}).get("Labels")
    return {str(k): str(v) for k, v in (labels or {}).items()}


def _host_port(payload: dict[str, Any], port: int) -> int:
    """Public port bound to ``port`` inside the container, 0 when unexposed.

    Accepts both the list shape ({"Ports": [{"PrivatePort", "PublicPort"}]})
    and the inspect shape ({"NetworkSettings": {"Ports": {"8080/tcp": [...]}}}).
    """
    ports = payload.get("Ports")
    if isinstance(ports, list):
        for item in ports:
            if isinstance(item, dict) and item.get("PrivatePort") == port and item.get("PublicPort"):
                return int(item["PublicPort"])
        return 0
    bindings = ((payload.get("NetworkSettings") or {}).get("Ports") or {}).get(f"{port}/tcp") or []
    for binding in bindings:
        if binding.get("HostPort"):
            return int(binding["HostPort"])
    return 0


def _ip_address(payload: dict[str, Any]) -> Optional[str]:
    settings = payload.get("NetworkSettings") or {}
    if settings.get("IPAddress"):
        return settings["IPAddress"]
    for network in (settings.get("Networks") or {}).values():
        if network.get("IPAddress"):
            return network["IPAddress"]
    return payload.get("IPAddress") or None


def _is_running(payload: dict[str, Any]) -> bool:
    state = payload.get("State")
    if isinstance(state, dict):
        return state.get("Running") is True
    if isinstance(state, str):
        return state == "running"
    info = payload.get("info")
    if isinstance(info, dict):
        return _is_running(info)
    # list endpoints only return live containers unless told otherwise
    return True


def to_container(payload: dict[str, Any], port: int = 0) -> RunningContainer:
    """Normalize an orchestration container payload."""
    labels = _labels(payload)
    # older API versions nest the inspect document under "info"
    inspect = payload.get("info") if isinstance(payload.get("info"), dict) else {}
    return RunningContainer(
        id=str(payload.get("Id") or payload.get("id") or ""),
        node_id=payload.get("node_id") or payload.get("NodeID"),
        ip_address=_ip_address(payload) or _ip_address(inspect),
        host_port=(_host_port(payload, port) or _host_port(inspect, port)) if port else 0,
        sequence=labels.get(SEQUENCE_LABEL, ""),
        labels=labels,
    )


class DiscoveryClient:
    """
    Tiny HTTP client wrapper for the orchestration API.

    Holds an httpx.AsyncClient for connection pooling; the caller owns the
    client and closes it.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        token: str,
        node_resource_label: str = "qingcloud",
        reconnect_delay_s: float = 2.0,
        event_queue_size: int = 1000,
    ):
        self._client = client
        self._base = base_url.rstrip("/")
        self._headers = {API_KEY_HEADER: token}
        self._node_label = node_resource_label
        self._reconnect_delay_s = reconnect_delay_s
        self._event_queue_size = event_queue_size

    async def _get(self, path: str, params: Optional[dict[str, str]] = None, retries: int = 2, backoff: float = 0.05) -> Any:
        """
        GET a JSON document, retrying connection failures with exponential
        backoff. 404 raises NotFoundError, other non-2xx UnexpectedResponse.
        """
        url = f"{self._base}{path}"
        last_exc: Exception | None = None

        for i in range(retries + 1):
            try:
                with DISCOVERY_LATENCY.time():
                    resp = await self._client.get(url, params=params, headers=self._headers)
            except httpx.HTTPError as e:
                last_exc = e
                DISCOVERY_REQUESTS.labels(status="error").inc()
                log.warning("Discovery error (attempt %d) on %s: %s", i + 1, url, e)
                await asyncio.sleep(backoff * (2**i))
                continue

            DISCOVERY_REQUESTS.labels(status=str(resp.status_code)).inc()
            if resp.status_code == 404:
                raise NotFoundError(f"{path} not found")
            if resp.status_code != 200:
                raise UnexpectedResponse(
                    f"Unexpected response {resp.status_code} on {path}", status_code=resp.status_code
                )
            try:
                return resp.json()
            except ValueError as e:
                raise UnexpectedResponse(f"Invalid JSON on {path}", status_code=resp.status_code) from e

        raise TransientNetworkError(f"Orchestration API unreachable: {last_exc}")

    async def list_containers(self, instance: str, service: str, port: int = 0) -> list[RunningContainer]:
        """Running containers labeled with the given instance and service."""
        flt = json.dumps({"labels": [f"{INSTANCE_LABEL}={instance}", f"{SERVICE_LABEL}={service}"]})
        payload = await self._get("/api/containers", params={"filter": flt})
        if not isinstance(payload, list):
            raise UnexpectedResponse(f"Expected a container list, got {type(payload).__name__}")
        return [to_container(c, port) for c in payload if isinstance(c, dict) and _is_running(c)]

    async def describe_container(self, container_id: str) -> Optional[RunningContainer]:
        """Look a container up by id; None once the platform has forgotten it."""
        try:
            payload = await self._get(f"/api/containers/{container_id}/json")
        except NotFoundError:
            return None
        if not isinstance(payload, dict):
            raise UnexpectedResponse(f"Expected a container object, got {type(payload).__name__}")
        return to_container(payload)

    async def describe_network_inventory(self, node_ids: Iterable[str]) -> list[NetworkAttachment]:
        """Resolve nodes to load balancer resources via the node resource label.

        Nodes that are gone or carry no resource label are skipped.
        """
        ids = sorted({n for n in node_ids if n})

        async def one(node_id: str) -> Optional[NetworkAttachment]:
            try:
                node = await self._get(f"/api/nodes/{node_id}")
            except NotFoundError:
                log.info("Node %s not found", node_id)
                return None
            resource_id = ((node or {}).get("labels") or {}).get(self._node_label)
            if not resource_id:
                log.debug("Node %s has no %r label", node_id, self._node_label)
                return None
            return NetworkAttachment(resource_id=str(resource_id), node_id=node_id, private_ip=node.get("ip"))

        results = await asyncio.gather(*(one(n) for n in ids))
        return [r for r in results if r is not None]

    async def stream_events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield ``docker`` event payloads until the stream closes.

        Connection failures raise TransientNetworkError; the subscription
        on top of this decides whether to reconnect.
        """
        url = f"{self._base}/api/events"
        try:
            async with aconnect_sse(
                self._client, "GET", url, params={"type": "es"}, headers=dict(self._headers),
                timeout=httpx.Timeout(None, connect=10.0),
            ) as source:
                if source.response.status_code != 200:
                    raise TransientNetworkError(f"Event stream answered {source.response.status_code}")
                log.info("Connected to event stream %s", url)
                async for sse in source.aiter_sse():
                    if sse.event != "docker":
                        continue
                    DISCOVERY_EVENTS.inc()
                    try:
                        payload = sse.json()
                    except ValueError:
                        log.warning("Dropping undecodable event: %r", sse.data)
                        continue
                    if isinstance(payload, dict):
                        yield payload
        except (httpx.HTTPError, SSEError) as e:
            raise TransientNetworkError(f"Event stream failed: {e}") from e

    def subscribe(self, patterns: Sequence[Pattern]) -> EventSubscription:
        """Return a reconnecting, filtered subscription to the event stream."""
        return EventSubscription(
            self.stream_events,
            patterns,
            maxsize=self._event_queue_size,
            reconnect_delay_s=self._reconnect_delay_s,
        )
