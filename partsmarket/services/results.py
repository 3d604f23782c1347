from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ErrorKind:
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    INTERNAL = "INTERNAL"

    HTTP_STATUS = {
        NOT_FOUND: 404,
        VALIDATION: 400,
        INSUFFICIENT_STOCK: 400,
        UNAUTHORIZED: 401,
        FORBIDDEN: 403,
        CONFLICT: 409,
        UPSTREAM_FAILURE: 502,
        INTERNAL: 500,
    }


INTERNAL_MESSAGE = "Something went wrong. Please retry the request."


@dataclass
class ServiceResult:
    """Outcome of a service operation: a value on success, an error kind otherwise.

    Business-rule failures travel as results rather than exceptions, so every
    caller has to look at ``ok`` before touching ``value``. A failed result may
    still carry a ``value`` (e.g. the FAILED transaction after a declined charge).
    """

    ok: bool
    value: Any = None
    error: str = ""
    message: str = ""
    details: dict = field(default_factory=dict)

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "ServiceResult":
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, error: str, message: str, *, value: Any = None, **details) -> "ServiceResult":
        return cls(ok=False, value=value, error=error, message=message, details=details)

    @classmethod
    def internal(cls) -> "ServiceResult":
        return cls.failure(ErrorKind.INTERNAL, INTERNAL_MESSAGE)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return ErrorKind.HTTP_STATUS.get(self.error, 500)


class UnitAborted(Exception):
    """Raised inside a unit of work to roll it back and report ``result``."""

    def __init__(self, result: ServiceResult):
        super().__init__(result.message)
        self.result = result
