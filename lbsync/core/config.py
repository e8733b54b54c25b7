"""Configuration for the lbsync daemon.

Provides strongly-typed settings using Pydantic, a loader from environment
variables, and a loader for the mappings file that pairs applications with
load balancer listeners.
"""

from __future__ import annotations

import json
import os
import re
from typing import Mapping as EnvMapping, Optional

from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError

from lbsync.core.errors import ConfigurationError
from lbsync.models.schemas import Application, Listener, Mapping

DEFAULT_EVENT_STATUSES = ("die", "restart", "start", "stop", "destroy", "oom")


class Settings(BaseModel):
    """Pydantic settings for the daemon."""
    # Orchestration platform
    discovery_url: AnyHttpUrl
    discovery_token: str = Field(..., min_length=1)
    node_resource_label: str = "qingcloud"

    # Load balancer API
    lb_api_url: AnyHttpUrl = Field("https://api.qingcloud.com/iaas/", validate_default=True)
    lb_zone: str = Field(..., min_length=1)
    lb_access_key: str = Field(..., min_length=1)
    lb_secret_key: str = Field(..., min_length=1)

    # Reconciliation
    mappings_file: Optional[str] = None
    sync_interval_s: float = Field(60.0, gt=0)
    filter_by_name: bool = True
    resolve_nics: bool = False
    cache_size: int = Field(200, ge=1)

    # Listener activation
    debounce_s: float = Field(1.0, ge=0)
    max_debounce_s: float = Field(10.0, ge=0)
    job_poll_interval_s: float = Field(1.0, gt=0)
    job_max_polls: int = Field(300, ge=1)

    # Event stream
    event_statuses: tuple[str, ...] = DEFAULT_EVENT_STATUSES
    event_queue_size: int = Field(1000, ge=1)
    reconnect_delay_s: float = Field(2.0, ge=0)

    request_timeout_s: float = Field(10.0, gt=0)
    http_host: str = "0.0.0.0"
    http_port: int = Field(8080, ge=1, le=65535)


def _env_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def load_settings(env: Optional[EnvMapping[str, str]] = None) -> Settings:
    """Load settings from environment variables and return a Settings object."""
    env = os.environ if env is None else env
    raw: dict[str, object] = {
        "discovery_url": env.get("DISCOVERY_URL"),
        "discovery_token": env.get("DISCOVERY_TOKEN"),
        "lb_zone": env.get("LB_ZONE"),
        "lb_access_key": env.get("LB_ACCESS_KEY"),
        "lb_secret_key": env.get("LB_SECRET_KEY"),
        "mappings_file": env.get("MAPPINGS_FILE") or None,
        "filter_by_name": _env_bool(env.get("FILTER_BY_NAME"), True),
        "resolve_nics": _env_bool(env.get("RESOLVE_NICS"), False),
    }
    optional = {
        "LB_API_URL": "lb_api_url",
        "NODE_RESOURCE_LABEL": "node_resource_label",
        "SYNC_INTERVAL_S": "sync_interval_s",
        "CACHE_SIZE": "cache_size",
        "DEBOUNCE_S": "debounce_s",
        "MAX_DEBOUNCE_S": "max_debounce_s",
        "JOB_POLL_INTERVAL_S": "job_poll_interval_s",
        "JOB_MAX_POLLS": "job_max_polls",
        "EVENT_QUEUE_SIZE": "event_queue_size",
        "RECONNECT_DELAY_S": "reconnect_delay_s",
        "REQUEST_TIMEOUT_S": "request_timeout_s",
        "HTTP_HOST": "http_host",
        "HTTP_PORT": "http_port",
    }
    for name, field in optional.items():
        if env.get(name):
            raw[field] = env[name]
    if env.get("EVENT_STATUSES"):
        raw["event_statuses"] = tuple(s for s in re.split(r"[\s,]+", env["EVENT_STATUSES"]) if s)

    required = ("discovery_url", "discovery_token", "lb_zone", "lb_access_key", "lb_secret_key")
    if raw["mappings_file"] and not all(raw[k] for k in required):
        for field, value in file_credentials(_read_json(str(raw["mappings_file"]))).items():
            if not raw[field]:
                raw[field] = value

    missing = [k.upper() for k in required if not raw[k]]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
    try:
        return Settings(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


_MAPPINGS = TypeAdapter(list[Mapping])

# config file section -> {file key: Settings field}
_FILE_CREDENTIALS = {
    "csphere": {"url": "discovery_url", "token": "discovery_token"},
    "qingcloud": {"zone": "lb_zone", "key": "lb_access_key", "secret": "lb_secret_key"},
}


def _read_json(path: str) -> object:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except OSError as e:
        raise ConfigurationError(f"Cannot read mappings file {path}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"Mappings file {path} is not valid JSON: {e}") from e


def file_credentials(payload: object) -> dict[str, str]:
    """Credentials from the ``csphere``/``qingcloud`` sections of a config file.

    Environment variables take precedence; these only fill the gaps.
    """
    found: dict[str, str] = {}
    if not isinstance(payload, dict):
        return found
    for section, fields in _FILE_CREDENTIALS.items():
        values = payload.get(section)
        if not isinstance(values, dict):
            continue
        for key, field in fields.items():
            if values.get(key):
                found[field] = str(values[key])
    return found


def parse_mappings(payload: object) -> list[Mapping]:
    """Validate a decoded mappings document.

    Accepts a bare list or an object with a ``mappings`` key, so files
    written for the older tooling (``service``/``lbs`` keys) keep working.
    """
    if isinstance(payload, dict) and "mappings" in payload:
        payload = payload["mappings"]
    try:
        mappings = _MAPPINGS.validate_python(payload)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid mappings: {e}") from e
    if not mappings:
        raise ConfigurationError("No mappings configured")
    return mappings


def parse_listeners(raw: str) -> list[Listener]:
    """Parse ``"listener[:policy] listener[:policy] ..."``."""
    listeners = []
    for item in raw.split():
        listener_id, _, policy_id = item.partition(":")
        listeners.append(Listener(listener_id=listener_id, policy_id=policy_id or None))
    return listeners


def load_mappings(settings: Settings, env: Optional[EnvMapping[str, str]] = None) -> list[Mapping]:
    """Load mappings from MAPPINGS_FILE, or from the single-mapping env vars."""
    env = os.environ if env is None else env
    if settings.mappings_file:
        return parse_mappings(_read_json(settings.mappings_file))

    instance, service = env.get("INSTANCE"), env.get("SERVICE")
    port, listeners = env.get("SERVICE_PORT"), env.get("LB_LISTENERS")
    if not (instance and service and port and listeners):
        raise ConfigurationError(
            "Set MAPPINGS_FILE, or INSTANCE, SERVICE, SERVICE_PORT and LB_LISTENERS"
        )
    try:
        mapping = Mapping(
            application=Application(instance=instance, service=service, port=int(port)),
            listeners=parse_listeners(listeners),
        )
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(f"Invalid single-mapping environment: {e}") from e
    return [mapping]
