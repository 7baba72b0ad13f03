from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Service-layer failure that the API layer renders as an HTTP response.

    ``status_code`` picks the HTTP status and ``error_code`` the machine
    readable code in the body. ``detail`` carries extra JSON-safe context.
    Subclasses may pin either as class attributes.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail: Dict[str, Any] = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status_code={self.status_code}, error_code={self.error_code!r})"


__all__ = ["ServiceError"]
