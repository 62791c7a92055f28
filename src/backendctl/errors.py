"""Error taxonomy shared by the orchestrator, providers, and the CLI.

Every failure that can reach a caller carries an :class:`ErrorCode`. The codes
are stable identifiers for diagnostics; :func:`user_message` turns them into a
single short, non-technical sentence suitable for display.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    """Normalised error codes."""

    # Container runtime
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DAEMON_UNAVAILABLE = "DAEMON_UNAVAILABLE"
    DOCKER_NOT_FOUND = "DOCKER_NOT_FOUND"
    INVALID_DOCKER_HOST = "INVALID_DOCKER_HOST"
    RUNTIME_UNAVAILABLE = "RUNTIME_UNAVAILABLE"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DOCKER_ERROR = "DOCKER_ERROR"

    # Registry and release catalog
    REGISTRY_RATE_LIMIT = "REGISTRY_RATE_LIMIT"
    REGISTRY_AUTH_FAILED = "REGISTRY_AUTH_FAILED"
    REGISTRY_NO_DIGEST = "REGISTRY_NO_DIGEST"
    REGISTRY_ERROR = "REGISTRY_ERROR"
    REGISTRY_PAGINATION_ERROR = "REGISTRY_PAGINATION_ERROR"
    RELEASES_API_ERROR = "RELEASES_API_ERROR"
    RELEASES_PAGINATION_ERROR = "RELEASES_PAGINATION_ERROR"

    # Orchestration
    OP_IN_PROGRESS = "OP_IN_PROGRESS"
    OP_NOT_FOUND = "OP_NOT_FOUND"
    INVALID_TAG = "INVALID_TAG"
    TAG_NOT_ALLOWED = "TAG_NOT_ALLOWED"
    NOT_INSTALLED = "NOT_INSTALLED"
    NOT_YET_AVAILABLE = "NOT_YET_AVAILABLE"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    CANNOT_DELETE_ACTIVE = "CANNOT_DELETE_ACTIVE"
    IMAGE_IN_USE = "IMAGE_IN_USE"
    NO_RELEASES = "NO_RELEASES"
    NO_ACTIVE_INSTANCE = "NO_ACTIVE_INSTANCE"
    CREATE_FAILED = "CREATE_FAILED"
    UI_NOT_READY = "UI_NOT_READY"

    # Input validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_OP_ID = "INVALID_OP_ID"
    INVALID_CONTAINER_ID = "INVALID_CONTAINER_ID"
    INVALID_RETENTION_POLICY = "INVALID_RETENTION_POLICY"
    INVALID_PORT_PREFERENCES = "INVALID_PORT_PREFERENCES"
    INVALID_DATA_LOSS_ACK = "INVALID_DATA_LOSS_ACK"


RUNTIME_UNAVAILABLE_CODES = frozenset(
    {
        ErrorCode.PERMISSION_DENIED,
        ErrorCode.DAEMON_UNAVAILABLE,
        ErrorCode.DOCKER_NOT_FOUND,
        ErrorCode.INVALID_DOCKER_HOST,
        ErrorCode.RUNTIME_UNAVAILABLE,
    }
)

VALIDATION_CODES = frozenset(
    {
        ErrorCode.INVALID_INPUT,
        ErrorCode.INVALID_OP_ID,
        ErrorCode.INVALID_CONTAINER_ID,
        ErrorCode.INVALID_RETENTION_POLICY,
        ErrorCode.INVALID_PORT_PREFERENCES,
        ErrorCode.INVALID_DATA_LOSS_ACK,
        ErrorCode.INVALID_TAG,
        ErrorCode.TAG_NOT_ALLOWED,
    }
)

_UPDATE_CHECKS_UNAVAILABLE = "Update checks are unavailable right now. Please try again later."

USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.PERMISSION_DENIED: (
        "Permission denied. Please ensure the container runtime is accessible and try again."
    ),
    ErrorCode.DAEMON_UNAVAILABLE: (
        "The container runtime is not running. Please start it and try again."
    ),
    ErrorCode.DOCKER_NOT_FOUND: (
        "The container runtime is not available. Please install it and try again."
    ),
    ErrorCode.INVALID_DOCKER_HOST: (
        "The runtime configuration is invalid. Please check your environment settings "
        "and try again."
    ),
    ErrorCode.RUNTIME_UNAVAILABLE: (
        "The container runtime is not available. Please install it and try again."
    ),
    ErrorCode.CONFLICT: "Unable to start due to a conflict (ports or name already in use).",
    ErrorCode.REGISTRY_RATE_LIMIT: (
        "Update checks are temporarily unavailable. Please try again later."
    ),
    ErrorCode.REGISTRY_AUTH_FAILED: "Update checks are unavailable. Please try again later.",
    ErrorCode.REGISTRY_ERROR: _UPDATE_CHECKS_UNAVAILABLE,
    ErrorCode.REGISTRY_NO_DIGEST: _UPDATE_CHECKS_UNAVAILABLE,
    ErrorCode.REGISTRY_PAGINATION_ERROR: _UPDATE_CHECKS_UNAVAILABLE,
    ErrorCode.RELEASES_API_ERROR: _UPDATE_CHECKS_UNAVAILABLE,
    ErrorCode.RELEASES_PAGINATION_ERROR: _UPDATE_CHECKS_UNAVAILABLE,
    ErrorCode.OP_IN_PROGRESS: (
        "Another operation is already running. Please wait for it to finish."
    ),
    ErrorCode.OP_NOT_FOUND: "No operation is currently running.",
    ErrorCode.INVALID_INPUT: "Invalid request.",
    ErrorCode.INVALID_OP_ID: "Invalid request.",
    ErrorCode.INVALID_CONTAINER_ID: "Invalid request.",
    ErrorCode.INVALID_RETENTION_POLICY: "Invalid retention setting.",
    ErrorCode.INVALID_PORT_PREFERENCES: (
        "Invalid port settings. Use two different ports (1-65535)."
    ),
    ErrorCode.INVALID_DATA_LOSS_ACK: "Please confirm the warning to continue.",
    ErrorCode.NOT_INSTALLED: "This version is not installed yet.",
    ErrorCode.NOT_YET_AVAILABLE: "This version is not available yet. Please try again later.",
    ErrorCode.INSTANCE_NOT_FOUND: "Instance not found.",
    ErrorCode.CANNOT_DELETE_ACTIVE: "You cannot delete the active instance.",
    ErrorCode.IMAGE_IN_USE: "This version is used by an instance. Delete the instance first.",
    ErrorCode.NO_RELEASES: "No official versions are available right now.",
    ErrorCode.NO_ACTIVE_INSTANCE: "No active instance is available.",
    ErrorCode.CREATE_FAILED: "Unable to start the selected version.",
    ErrorCode.UI_NOT_READY: (
        "The service is not reachable yet. Please wait and try Refresh."
    ),
    ErrorCode.INVALID_TAG: "That version is not supported.",
    ErrorCode.TAG_NOT_ALLOWED: "That version is not supported.",
}

PORT_ALLOCATED_MESSAGE = "That port is already in use. Choose different ports and try again."
_PORT_ALLOCATED_RE = re.compile(r"port is already allocated", re.IGNORECASE)


class ServiceVersionsError(RuntimeError):
    """Base error carrying a normalised :class:`ErrorCode`."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        details: Mapping[str, object] | None = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.details: dict[str, object] = dict(details or {})
        super().__init__(message or self.code.value)

    @property
    def message(self) -> str:
        """Return the technical message supplied at construction."""
        return str(self.args[0]) if self.args else self.code.value


class ValidationError(ServiceVersionsError):
    """Raised when caller input is rejected before any work starts."""


class OperationAlreadyRunning(ServiceVersionsError):
    """Raised when an operation is requested while another one is running."""

    def __init__(self, op_id: str | None = None) -> None:
        super().__init__(
            ErrorCode.OP_IN_PROGRESS,
            "Another operation is already running",
            details={"op_id": op_id} if op_id else None,
        )


class RuntimeUnavailableError(ServiceVersionsError):
    """Raised when the container runtime cannot be used at all."""


class ContainerRuntimeError(ServiceVersionsError):
    """Raised for normalised container runtime failures."""


@dataclass(frozen=True)
class RateLimitInfo:
    """Opaque rate-limit metadata surfaced by the registry."""

    limit: str | None = None
    remaining: str | None = None
    reset: str | None = None
    retry_after: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        """Return a serialisable representation."""
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
            "retry_after": self.retry_after,
        }


class RegistryError(ServiceVersionsError):
    """Raised for registry and release catalog failures."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        status: int | None = None,
        rate_limit: RateLimitInfo | None = None,
        details: Mapping[str, object] | None = None,
    ) -> None:
        merged = dict(details or {})
        if status is not None:
            merged["status"] = status
        super().__init__(code, message, details=merged)
        self.status = status
        self.rate_limit = rate_limit


class RegistryRateLimitError(RegistryError):
    """Raised when the registry answers with HTTP 429."""

    def __init__(
        self,
        message: str = "Registry rate limit exceeded",
        *,
        status: int | None = 429,
        rate_limit: RateLimitInfo | None = None,
    ) -> None:
        super().__init__(
            ErrorCode.REGISTRY_RATE_LIMIT,
            message,
            status=status,
            rate_limit=rate_limit,
        )


def user_message(error: BaseException) -> str:
    """Return a short, non-technical sentence describing *error*.

    Returns an empty string when no friendly mapping exists.
    """
    text = str(error)
    if text and _PORT_ALLOCATED_RE.search(text):
        return PORT_ALLOCATED_MESSAGE
    if isinstance(error, ServiceVersionsError):
        if error.code is ErrorCode.UI_NOT_READY and error.message != error.code.value:
            return error.message
        return USER_MESSAGES.get(error.code, "")
    return ""


def error_code_of(error: BaseException) -> ErrorCode | None:
    """Return the :class:`ErrorCode` carried by *error*, if any."""
    if isinstance(error, ServiceVersionsError):
        return error.code
    return None


def to_error_response(error: BaseException) -> dict[str, str]:
    """Normalise *error* into a ``{"message", "code"}`` payload."""
    message = user_message(error)
    if not message and isinstance(error, ServiceVersionsError):
        message = error.message
    payload = {"message": message or "Unexpected error"}
    code = error_code_of(error)
    if code is not None:
        payload["code"] = code.value
    return payload


__all__ = [
    "ContainerRuntimeError",
    "ErrorCode",
    "OperationAlreadyRunning",
    "PORT_ALLOCATED_MESSAGE",
    "RUNTIME_UNAVAILABLE_CODES",
    "RateLimitInfo",
    "RegistryError",
    "RegistryRateLimitError",
    "RuntimeUnavailableError",
    "ServiceVersionsError",
    "USER_MESSAGES",
    "VALIDATION_CODES",
    "ValidationError",
    "error_code_of",
    "to_error_response",
    "user_message",
]
