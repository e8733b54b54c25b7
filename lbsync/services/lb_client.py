"""Async client for the cloud load balancer RPC API.

Requests are signed GETs (HMAC-SHA256 over the sorted query string). List
arguments are flattened to ``name.N`` / ``name.N.field`` parameters. Listener
activation is an asynchronous job that ``wait_for_job`` polls to completion.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence
from urllib.parse import quote, urlsplit

import httpx
from prometheus_client import Counter, Histogram

from lbsync.core.errors import JobFailed, JobTimeout, TransientNetworkError, UnexpectedResponse
from lbsync.models.schemas import Backend, JobStatus, Listener, NetworkAttachment, SavedBackend

log = logging.getLogger("lbsync.lb")

LB_REQUESTS = Counter("lbsync_lb_requests_total", "Load balancer API requests", ["action", "status"])
LB_LATENCY = Histogram("lbsync_lb_latency_seconds", "Load balancer API request latency seconds", ["action"])
LB_JOB_POLLS = Counter("lbsync_lb_job_polls_total", "Job status polls", ["status"])

_JOB_STATUSES = {
    "pending": JobStatus.PENDING,
    "working": JobStatus.WORKING,
    "successful": JobStatus.DONE,
    "done": JobStatus.DONE,
    "failed": JobStatus.FAILED,
    "done with failure": JobStatus.FAILED,
}


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def flatten_params(params: dict[str, Any]) -> dict[str, str]:
    """Expand list arguments into the API's indexed parameter names.

    >>> flatten_params({"jobs": ["j-1"], "backends": [{"port": 80}]})
    {'jobs.1': 'j-1', 'backends.1.port': '80'}
    """
    out: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for i, item in enumerate(value, 1):
                if isinstance(item, dict):
                    for k, v in item.items():
                        if v is not None:
                            out[f"{key}.{i}.{k}"] = _scalar(v)
                else:
                    out[f"{key}.{i}"] = _scalar(item)
        else:
            out[key] = _scalar(value)
    return out


def sign_query(params: dict[str, str], secret_key: str, path: str, method: str = "GET") -> str:
    """Return the canonical query string with its ``signature`` appended."""
    query = "&".join(f"{quote(k, safe='-_~')}={quote(params[k], safe='-_~')}" for k in sorted(params))
    digest = hmac.new(secret_key.encode(), f"{method}\n{path}\n{query}".encode(), hashlib.sha256).digest()
    signature = base64.b64encode(digest).strip().decode()
    return f"{query}&signature={quote(signature, safe='')}"


def _to_saved(item: dict[str, Any]) -> SavedBackend:
    return SavedBackend(
        backend_id=str(item["loadbalancer_backend_id"]),
        resource_id=str(item["resource_id"]),
        port=int(item["port"]),
        weight=int(item.get("weight") or 1),
        name=item.get("loadbalancer_backend_name") or "",
        nic_id=item.get("nic_id") or None,
        policy_id=item.get("loadbalancer_policy_id") or None,
    )


class LoadBalancerClient:
    """Signed RPC client; the caller owns the httpx.AsyncClient."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str,
        zone: str,
        access_key: str,
        secret_key: str,
        poll_interval_s: float = 1.0,
        max_polls: int = 300,
        retries: int = 2,
        backoff: float = 0.5,
    ):
        self._client = client
        self._url = api_url if api_url.endswith("/") else f"{api_url}/"
        self._path = urlsplit(self._url).path or "/"
        self._zone = zone
        self._access_key = access_key
        self._secret_key = secret_key
        self._poll_interval_s = poll_interval_s
        self._max_polls = max_polls
        self._retries = retries
        self._backoff = backoff

    def _signed_url(self, action: str, params: dict[str, Any]) -> str:
        query = flatten_params(params)
        query.update(
            action=action,
            zone=self._zone,
            access_key_id=self._access_key,
            signature_method="HmacSHA256",
            signature_version="1",
            version="1",
            time_stamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        return f"{self._url}?{sign_query(query, self._secret_key, self._path)}"

    async def request(self, action: str, **params: Any) -> dict[str, Any]:
        """
        Call one API action and return its decoded body.

        Connection failures are retried with exponential backoff and end in
        TransientNetworkError; HTTP errors and non-zero ``ret_code`` raise
        UnexpectedResponse.
        """
        last_exc: Exception | None = None
        for i in range(self._retries + 1):
            try:
                with LB_LATENCY.labels(action=action).time():
                    resp = await self._client.get(self._signed_url(action, params))
            except httpx.HTTPError as e:
                last_exc = e
                LB_REQUESTS.labels(action=action, status="error").inc()
                log.warning("LB %s error (attempt %d): %s", action, i + 1, e)
                await asyncio.sleep(self._backoff * (2**i))
                continue

            if resp.status_code != 200:
                LB_REQUESTS.labels(action=action, status=str(resp.status_code)).inc()
                raise UnexpectedResponse(f"{action}: HTTP {resp.status_code}", status_code=resp.status_code)
            try:
                body = resp.json()
            except ValueError as e:
                LB_REQUESTS.labels(action=action, status="invalid").inc()
                raise UnexpectedResponse(f"{action}: invalid JSON", status_code=200) from e
            ret_code = body.get("ret_code", 0) if isinstance(body, dict) else None
            if ret_code != 0:
                LB_REQUESTS.labels(action=action, status="rejected").inc()
                message = body.get("message", "") if isinstance(body, dict) else repr(body)
                raise UnexpectedResponse(f"{action}: ret_code={ret_code} {message}", status_code=200, ret_code=ret_code)
            LB_REQUESTS.labels(action=action, status="ok").inc()
            return body

        raise TransientNetworkError(f"{action}: load balancer API unreachable: {last_exc}")

    async def _paged(self, action: str, set_key: str, limit: int = 100, **params: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while True:
            body = await self.request(action, offset=len(items), limit=limit, **params)
            page = body.get(set_key) or []
            items.extend(page)
            total = int(body.get("total_count", len(items)))
            if not page or len(items) >= total:
                return items

    async def list_backends(self, listener: Listener) -> list[SavedBackend]:
        """Backends configured on the listener, scoped to its policy."""
        items = await self._paged(
            "DescribeLoadBalancerBackends", "loadbalancer_backend_set", loadbalancer_listener=listener.listener_id
        )
        backends = [_to_saved(item) for item in items]
        return [b for b in backends if b.policy_id == (listener.policy_id or None)]

    async def add_backends(self, listener: Listener, backends: Sequence[Backend]) -> None:
        if not backends:
            return
        await self.request(
            "AddLoadBalancerBackends",
            loadbalancer_listener=listener.listener_id,
            backends=[
                {
                    "resource_id": b.resource_id,
                    "port": b.port,
                    "weight": b.weight,
                    "loadbalancer_backend_name": b.name or None,
                    "nic_id": b.nic_id,
                    "loadbalancer_policy_id": listener.policy_id,
                }
                for b in backends
            ],
        )

    async def remove_backends(self, listener: Listener, backends: Sequence[SavedBackend]) -> None:
        if not backends:
            return
        await self.request("DeleteLoadBalancerBackends", loadbalancer_backends=[b.backend_id for b in backends])

    async def describe_nics(self) -> list[NetworkAttachment]:
        """Attached NICs, used to resolve containers that own their own NIC."""
        items = await self._paged("DescribeNics", "nic_set")
        return [
            NetworkAttachment(resource_id=str(n["instance_id"]), nic_id=n.get("nic_id"), private_ip=n.get("private_ip"))
            for n in items
            if n.get("instance_id")
        ]

    async def activate_listeners(self, listener_ids: Iterable[str]) -> Optional[str]:
        """Submit one job applying pending changes of every listener's load balancer.

        Returns the job id, or None when there is nothing to apply.
        """
        ids = list(dict.fromkeys(listener_ids))
        if not ids:
            return None
        body = await self.request("DescribeLoadBalancerListeners", loadbalancer_listeners=ids)
        lb_ids = list(dict.fromkeys(
            item["loadbalancer_id"] for item in body.get("loadbalancer_listener_set") or [] if item.get("loadbalancer_id")
        ))
        if not lb_ids:
            log.warning("No load balancer found for listeners %s", ids)
            return None
        body = await self.request("UpdateLoadBalancers", loadbalancers=lb_ids)
        job_id = body.get("job_id")
        if not job_id:
            raise UnexpectedResponse("UpdateLoadBalancers returned no job_id")
        log.info("Submitted job %s updating load balancers %s", job_id, lb_ids)
        return str(job_id)

    async def poll_job(self, job_id: str) -> JobStatus:
        body = await self.request("DescribeJobs", jobs=[job_id])
        jobs = body.get("job_set") or []
        if not jobs:
            raise UnexpectedResponse(f"Job {job_id} not found")
        raw = str(jobs[0].get("status", ""))
        try:
            return _JOB_STATUSES[raw]
        except KeyError:
            raise UnexpectedResponse(f"Job {job_id} has unknown status {raw!r}") from None

    async def wait_for_job(self, job_id: str) -> None:
        """Poll until the job is terminal. Raises JobFailed or JobTimeout."""
        for _ in range(self._max_polls):
            try:
                status = await self.poll_job(job_id)
            except TransientNetworkError as e:
                LB_JOB_POLLS.labels(status="error").inc()
                log.warning("Polling job %s failed: %s", job_id, e)
            else:
                LB_JOB_POLLS.labels(status=status.value).inc()
                if status is JobStatus.DONE:
                    log.info("Job %s done", job_id)
                    return
                if status is JobStatus.FAILED:
                    raise JobFailed(job_id, status.value)
            await asyncio.sleep(self._poll_interval_s)
        raise JobTimeout(job_id, self._max_polls)
