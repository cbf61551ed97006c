"""Exceptions raised by the deployment orchestrator."""

import json
from typing import TYPE_CHECKING, Optional

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

if TYPE_CHECKING:
    from .models import Action, ReconcileResult, ResourceId

# HTTP statuses worth retrying: throttling and server-side failures
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class DeployctlError(Exception):
    """Base class for all orchestrator errors."""

    pass


class ParseError(DeployctlError):
    """Raised when a manifest document is malformed."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class ValidationError(DeployctlError):
    """Raised when a manifest set violates its structural invariants."""

    pass


class CycleError(ValidationError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list["ResourceId"]):
        self.cycle = cycle
        path = " -> ".join(str(rid) for rid in [*cycle, cycle[0]])
        super().__init__(f"Dependency cycle detected: {path}")


class ClusterError(DeployctlError):
    """Base class for failures talking to the cluster."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class TransientError(ClusterError):
    """Network, timeout or throttling failure. Safe to retry."""

    pass


class PermanentError(ClusterError):
    """The cluster rejected the request. Retrying will not help."""

    pass


class FatalApplyError(DeployctlError):
    """
    Raised when a reconciliation pass has to be aborted.

    Carries enough context for the caller to resume or repair: the failing
    resource, the action that was attempted, how many retries were spent,
    and the partial result of the pass.
    """

    def __init__(
        self,
        resource_id: "ResourceId",
        action: Optional["Action"],
        retries: int,
        reason: str,
        result: Optional["ReconcileResult"] = None,
    ):
        self.resource_id = resource_id
        self.action = action
        self.retries = retries
        self.reason = reason
        self.result = result
        action_str = action.value if action else "observe"
        super().__init__(
            f"{action_str} {resource_id} failed after {retries} "
            f"retr{'y' if retries == 1 else 'ies'}: {reason}"
        )


def classify_api_error(exc: Exception, context: str) -> ClusterError:
    """
    Translate a Kubernetes client failure into a transient or permanent error.

    Args:
        exc: Exception raised by the kubernetes client
        context: Short description of the call, used in the message

    Returns:
        TransientError or PermanentError wrapping the original failure
    """
    if isinstance(exc, ApiException):
        status = exc.status
        if not status or status in TRANSIENT_STATUS_CODES:
            return TransientError(f"{context}: {exc.reason or exc}", status=status)
        return PermanentError(f"{context}: {_api_message(exc)}", status=status)

    if isinstance(exc, (Urllib3HTTPError, OSError)):
        return TransientError(f"{context}: {exc}")

    return PermanentError(f"{context}: {exc}")


def _api_message(exc: ApiException) -> str:
    """Pull the human-readable message out of an API error body if present."""
    if exc.body:
        try:
            body = json.loads(exc.body)
            if isinstance(body, dict) and body.get("message"):
                return f"{exc.status} {body['message']}"
        except (TypeError, ValueError):
            pass
    return f"{exc.status} {exc.reason}"
