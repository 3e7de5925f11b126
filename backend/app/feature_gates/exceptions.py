"""Exceptions surfaced when a tenant operation exceeds its plan."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class FeatureGateError(Exception):
    """Actionable gating failure returned to API callers as a 403."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        detail: Optional[Mapping[str, Any]] = None,
        status_code: int = status.HTTP_403_FORBIDDEN,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.detail = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))
