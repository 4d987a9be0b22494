"""
SWARM — Shared Error Definitions

Common exceptions used across the control plane and the workers.
"""

from __future__ import annotations

from typing import Optional


class SwarmError(Exception):
    """Base exception for all SWARM errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(SwarmError):
    """Raised when required configuration is missing or invalid."""
    pass


class MissingEnvironmentVariableError(ConfigurationError):
    """Raised when a required environment variable is not set."""
    def __init__(self, var_name: str):
        self.var_name = var_name
        super().__init__(f"Missing required environment variable: {var_name}")


# =============================================================================
# Registry Errors
# =============================================================================
class RegistryError(SwarmError):
    """Base exception for registry-related errors."""
    pass


class RegistryUnavailableError(RegistryError):
    """Raised when the key-value store cannot be reached."""
    def __init__(self, operation: str, key: str = "", reason: str = ""):
        self.operation = operation
        self.key = key
        self.reason = reason
        super().__init__(f"Registry unavailable during {operation} (key={key or '-'}): {reason}")


# =============================================================================
# Provisioner Errors
# =============================================================================
class ProvisionerError(SwarmError):
    """
    Failure of a create/list/stop/destroy call.

    ``retryable`` separates transient failures (network, rate limit,
    server-side errors) from fatal ones (invalid config, not found), so the
    reaper's retry-next-sweep policy and the orchestrator's fail-fast policy
    read the same value.
    """
    def __init__(
        self,
        operation: str,
        message: str,
        *,
        resource_id: str = "",
        status: Optional[int] = None,
        retryable: bool = False,
    ):
        self.operation = operation
        self.resource_id = resource_id
        self.status = status
        self.retryable = retryable
        super().__init__(
            f"Provisioner {operation} failed (resource_id={resource_id or '-'}, "
            f"status={status if status is not None else '-'}): {message}"
        )


class ResourceNotFoundError(ProvisionerError):
    """Raised when the provisioner does not know the resource."""
    def __init__(self, operation: str, resource_id: str):
        super().__init__(operation, "resource not found", resource_id=resource_id, status=404)


def is_retryable_status(status: int) -> bool:
    """Rate limits and server-side errors are worth retrying."""
    return status == 429 or status == 408 or status >= 500


# =============================================================================
# Session Errors
# =============================================================================
class SessionError(SwarmError):
    """Base exception for session-related errors."""
    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class SessionNotFoundError(SessionError):
    """Raised when a read-style operation targets an unknown session."""
    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session not found: {session_id}")


class SessionTimeoutError(SessionError):
    """Raised when waiting for a session exceeds the caller's deadline."""
    def __init__(self, session_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            session_id,
            f"Session {session_id} did not finish within {timeout_seconds:g}s",
        )
