"""Correlation and instance context for request tracing."""

import uuid
from contextvars import ContextVar, Token

# Context variables - accessible across calls within one request/task
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
instance_id_var: ContextVar[str] = ContextVar("instance_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


def get_instance_id() -> str:
    """Get the provider instance currently being processed."""
    return instance_id_var.get()


def bind_instance_id(instance_id: str) -> Token[str]:
    """Bind the provider instance for the current event."""
    return instance_id_var.set(instance_id)


def unbind_instance_id(token: Token[str]) -> None:
    instance_id_var.reset(token)
