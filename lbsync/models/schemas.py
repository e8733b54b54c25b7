"""Pydantic models shared by the clients, the reconciler and the ops API."""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

INSTANCE_LABEL = "csphere_instancename"
SERVICE_LABEL = "csphere_servicename"
SEQUENCE_LABEL = "csphere_containerseq"


class Application(BaseModel):
    """A deployable unit: an orchestration instance/service pair and its port."""

    model_config = ConfigDict(frozen=True)

    instance: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1, validation_alias=AliasChoices("service", "name"))
    port: int = Field(..., ge=1, le=65535)
    weight: int = Field(1, ge=1, le=100)

    @property
    def key(self) -> str:
        return f"{self.instance}/{self.service}"

    @property
    def name_prefix(self) -> str:
        """Prefix shared by every backend name this application owns."""
        return f"{self.instance}-{self.service}-"

    def backend_name(self, sequence: str) -> str:
        return f"{self.name_prefix}{sequence}"

    def owns_backend(self, name: str) -> bool:
        """True when ``name`` is this application's prefix plus one sequence token.

        ``web-api-v2-1`` belongs to ``web/api-v2``, not to ``web/api``.
        """
        return re.fullmatch(rf"{re.escape(self.name_prefix)}[^-]+", name or "") is not None

    def owns(self, labels: dict[str, str] | None) -> bool:
        """True when orchestration labels place a container in this application."""
        labels = labels or {}
        return labels.get(INSTANCE_LABEL) == self.instance and labels.get(SERVICE_LABEL) == self.service


class Listener(BaseModel):
    """A load balancer listener, optionally scoped to one forwarding policy."""

    model_config = ConfigDict(frozen=True)

    listener_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("listener_id", "listenerID", "listener")
    )
    policy_id: Optional[str] = Field(None, validation_alias=AliasChoices("policy_id", "policyID", "policy"))

    def __str__(self) -> str:
        return f"{self.listener_id}:{self.policy_id}" if self.policy_id else self.listener_id


class Mapping(BaseModel):
    """One application and the listeners whose backends must mirror it."""

    model_config = ConfigDict(frozen=True)

    application: Application = Field(..., validation_alias=AliasChoices("application", "service"))
    listeners: tuple[Listener, ...] = Field(..., min_length=1, validation_alias=AliasChoices("listeners", "lbs"))


class RunningContainer(BaseModel):
    """A container the orchestration platform currently reports as running."""

    id: str
    node_id: Optional[str] = None
    ip_address: Optional[str] = None
    host_port: int = 0
    sequence: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class NetworkAttachment(BaseModel):
    """Where a node or NIC lives in the load balancer's addressing scheme."""

    resource_id: str
    nic_id: Optional[str] = None
    node_id: Optional[str] = None
    private_ip: Optional[str] = None


class Backend(BaseModel):
    """A desired pool member derived from one running container."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    port: int
    weight: int = 1
    name: str = ""
    nic_id: Optional[str] = None

    @property
    def identity(self) -> tuple[str, int, Optional[str]]:
        # weight and name are not part of the identity
        return self.resource_id, self.port, self.nic_id


class SavedBackend(Backend):
    """A pool member as currently configured on a listener."""

    backend_id: str
    policy_id: Optional[str] = None


class Event(BaseModel):
    """A container lifecycle event from the orchestration stream."""

    container_id: str
    status: str
    application_key: Optional[str] = None
    time: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Event":
        attributes = (payload.get("Actor") or {}).get("Attributes") or {}
        key = None
        if attributes.get(INSTANCE_LABEL) and attributes.get(SERVICE_LABEL):
            key = f"{attributes[INSTANCE_LABEL]}/{attributes[SERVICE_LABEL]}"
        return cls(
            container_id=str(payload.get("id") or payload.get("Id") or ""),
            status=str(payload.get("status") or payload.get("Action") or ""),
            application_key=key,
            time=payload.get("time"),
        )


class JobStatus(str, Enum):
    """Terminal and non-terminal states of an asynchronous load balancer job."""
    PENDING = "pending"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


class SchedulerState(str, Enum):
    IDLE = "idle"
    DEBOUNCE = "debounce"
    RUNNING = "running"
