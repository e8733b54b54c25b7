"""Error taxonomy shared by the API clients and the reconciliation engine."""
from __future__ import annotations


class LBSyncError(Exception):
    """Base class for every error raised by lbsync."""


class TransientNetworkError(LBSyncError):
    """An API call failed because of connectivity or a timeout. Retryable."""


class NotFoundError(LBSyncError):
    """The requested container or backend does not exist."""


class UnexpectedResponse(LBSyncError):
    """An API answered with a status or payload we do not understand."""

    def __init__(self, message: str, status_code: int | None = None, ret_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.ret_code = ret_code


class ConfigurationError(LBSyncError):
    """Mappings or credentials are missing or malformed. Fatal at startup."""


class JobTimeout(TransientNetworkError):
    """A load balancer job did not reach a terminal status in time."""

    def __init__(self, job_id: str, polls: int):
        super().__init__(f"Job {job_id} still running after {polls} polls")
        self.job_id = job_id
        self.polls = polls


class JobFailed(UnexpectedResponse):
    """A load balancer job finished with a failure status."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} finished with status {status!r}")
        self.job_id = job_id
        self.status = status
