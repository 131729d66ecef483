"""Correlation ID propagation across requests and tasks."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


@contextmanager
def bound_correlation_id(cid: str | None) -> Iterator[str]:
    """Bind cid for the duration of the block (task payloads carry their own).

    Falls back to the current ID, or a fresh one when nothing is bound.
    """
    effective = cid or get_correlation_id() or generate_correlation_id()
    token = set_correlation_id(effective)
    try:
        yield effective
    finally:
        reset_correlation_id(token)
