"""Error taxonomy for the andromeda gateway.

Every error carries the HTTP status it maps to and the text a client may see.
Upstream detail stays in the exception for logging only.
"""

from __future__ import annotations

GENERIC_UPSTREAM_MESSAGE = "The assistant is unavailable right now. Please try again."
TOOL_CHAIN_MESSAGE = "The assistant could not finish using its tools. Please try again."


class GatewayError(Exception):
    """Base class for request-scoped gateway failures."""

    status_code = 500
    client_message = GENERIC_UPSTREAM_MESSAGE

    def public_message(self) -> str:
        """Return the message that is safe to show to a client."""
        return self.client_message


class InputValidationError(GatewayError):
    """Raised for malformed or out-of-bounds request input."""

    status_code = 400

    def public_message(self) -> str:
        return str(self)


class RateLimitError(GatewayError):
    """Raised when a client key exceeded its request window."""

    status_code = 429
    client_message = "Too many requests. Please slow down."

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"rate limited, retry after {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds


class UpstreamTransportError(GatewayError):
    """Raised on upstream timeouts, network failures and non-2xx responses."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.upstream_status = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.upstream_status is None:
            return base
        return f"{base} (status={self.upstream_status})"


class ToolChainUnresolvedError(GatewayError):
    """Raised when the tool resolution loop runs out of iterations."""

    client_message = TOOL_CHAIN_MESSAGE
