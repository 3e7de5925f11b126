"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

ConnectionFactory = Callable[[], Any]

_connection_factory: Optional[ConnectionFactory] = None


def configure(*, get_conn: ConnectionFactory) -> None:
    """Register the database connection factory used by the billing stores."""

    global _connection_factory
    _connection_factory = get_conn


def reset() -> None:
    global _connection_factory
    _connection_factory = None


def get_conn() -> Any:
    if _connection_factory is None:
        raise RuntimeError("Application context has not been configured yet: get_conn")
    return _connection_factory()
