from __future__ import annotations

from enum import Enum

__all__ = [
    "BaseError",
    "BadRequestError",
    "ConfigurationError",
    "ErrorKind",
    "ForbiddenError",
    "NotFoundError",
    "UpstreamError",
]


class ErrorKind(str, Enum):
    """Error kind.

    Attributes:
        INVALID_INPUT: Client caused error.
        FORBIDDEN: Caller tier does not allow the request.
        NOT_FOUND: Index or type is not configured.
        UPSTREAM_FAILURE: Transport or engine error.
        CONFIGURATION_FAILURE: Fatal initialization error.
    """

    INVALID_INPUT = "invalid_input"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    UPSTREAM_FAILURE = "upstream_failure"
    CONFIGURATION_FAILURE = "configuration_failure"


class BaseError(Exception):
    status_code: int
    kind: ErrorKind

    message: str
    operation: str | None
    index: str | None
    type: str | None
    fields: list[str]

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        index: str | None = None,
        type: str | None = None,
        fields: list[str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.index = index
        self.type = type
        self.fields = list(fields) if fields else []

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "status_code": self.status_code,
            "message": self.message,
            "operation": self.operation,
            "index": self.index,
            "type": self.type,
            "fields": self.fields,
        }


class BadRequestError(BaseError):
    status_code = 400
    kind = ErrorKind.INVALID_INPUT


class ForbiddenError(BaseError):
    status_code = 403
    kind = ErrorKind.FORBIDDEN


class NotFoundError(BaseError):
    status_code = 404
    kind = ErrorKind.NOT_FOUND


class UpstreamError(BaseError):
    status_code = 502
    kind = ErrorKind.UPSTREAM_FAILURE


class ConfigurationError(BaseError):
    status_code = 500
    kind = ErrorKind.CONFIGURATION_FAILURE
