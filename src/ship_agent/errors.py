"""
Errors
======

Exception hierarchy for the ship agent.

The resilience layer decides whether to retry by looking at the exception
type first (``TransientError`` and the network errors raised by requests /
the socket layer). Message matching is only a compatibility fallback for
errors coming back from the Docker daemon as plain ``APIError`` strings.
"""

from __future__ import annotations

from typing import Optional


class ShipAgentError(Exception):
    """Base exception for all ship agent errors."""

    pass


# ─── Retryable ────────────────────────────────────────────────────────────────

class TransientError(ShipAgentError):
    """A failure that is safe to retry (network blips, HQ 5xx, ...)."""

    pass


class HqRequestError(TransientError):
    """HQ answered with a non-success HTTP status."""

    def __init__(self, method: str, url: str, status_code: int, body: str = "") -> None:
        self.method      = method
        self.url         = url
        self.status_code = status_code
        self.body        = body
        super().__init__(f"HQ {method} {url} returned {status_code}: {body[:200]}")


# ─── Deployment failures ──────────────────────────────────────────────────────

class ImagePullError(ShipAgentError):
    """The registry reported an error while streaming an image pull."""

    def __init__(self, image: str, message: str) -> None:
        self.image   = image
        self.message = message
        super().__init__(f"Failed to pull image {image}: {message}")


class ContainerStartError(ShipAgentError):
    """Creating or starting the managed container failed."""

    def __init__(self, container_name: str, message: str) -> None:
        self.container_name = container_name
        self.message        = message
        super().__init__(f"Container '{container_name}' could not be started: {message}")


class DockerNotAvailableError(ShipAgentError):
    """The Docker daemon could not be reached."""

    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        self.operation = operation
        super().__init__(
            message or f"Docker daemon is not available (during {operation}). "
                       f"Is Docker running and is the socket accessible?"
        )


# ─── Policy outcomes ──────────────────────────────────────────────────────────

class OperationTimeoutError(ShipAgentError):
    """A resilience policy's overall timeout fired. Never retried."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout   = timeout
        super().__init__(f"Operation '{operation}' timed out after {timeout:g}s")


class OperationCancelledError(ShipAgentError):
    """The cancellation signal was set while an operation was in progress."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Operation '{operation}' was cancelled")


# ─── Configuration ────────────────────────────────────────────────────────────

class ConfigError(ShipAgentError):
    """Invalid configuration value.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable description of the problem
    """

    def __init__(self, field: str, message: str) -> None:
        self.field   = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")
