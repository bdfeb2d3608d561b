"""Classification-scoped observability helpers."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Optional

logger = logging.getLogger(__name__)

_classification_id_ctx: ContextVar[Optional[str]] = ContextVar("classification_id", default=None)


def bind_classification_id(value: Optional[str]) -> ContextVar.Token | None:
    """Bind a classification id for the current context and return the reset token."""

    if value is None:
        return None
    return _classification_id_ctx.set(value)


def reset_classification_id(token: Optional[ContextVar.Token]) -> None:
    """Reset the classification id context using the provided token."""

    if token is None:
        return
    _classification_id_ctx.reset(token)


def current_classification_id() -> Optional[str]:
    """Return the active classification id if set."""

    return _classification_id_ctx.get()


def redact_api_key(raw: Optional[str]) -> str:
    """Return a redacted representation of an API key for safe logging."""

    if not raw:
        return "<missing>"
    if len(raw) <= 3:
        return "***"
    return f"{raw[:4]}***"


def log_event(message: str, **extra: object) -> None:
    """Log an event with the active classification id automatically attached."""

    payload = {"classification_id": current_classification_id(), **extra}
    logger.info(message, extra={"payload": payload})
