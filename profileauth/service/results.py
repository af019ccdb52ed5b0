from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from profileauth.service.errors import ErrorKind, ServiceError


class ErrorBody(BaseModel):
    kind: ErrorKind
    code: str
    message: str
    status_code: int
    details: dict[str, Any] = Field(default_factory=dict)


class AuthResult(BaseModel):
    """Outcome of a facade operation; controllers pick the transport status."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None

    @classmethod
    def ok(cls, data: Any = None) -> "AuthResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, exc: ServiceError) -> "AuthResult":
        return cls(
            success=False,
            error=ErrorBody(
                kind=exc.kind,
                code=exc.error_code,
                message=exc.message,
                status_code=exc.status_code,
                details=exc.detail,
            ),
        )
