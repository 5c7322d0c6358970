"""Typed results returned by every external call."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union


class ErrorKind(str, Enum):
    IO = "io"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INVALID_CURSOR = "invalid_cursor"


_TRANSIENT_KINDS = {ErrorKind.IO, ErrorKind.TIMEOUT}


@dataclass(frozen=True, slots=True)
class ApiError:
    """Failure reported by a platform or Discord call."""

    kind: ErrorKind
    status: int | None = None
    reset_after: float = 0.0
    message: str | None = None

    @property
    def transient(self) -> bool:
        return self.kind in _TRANSIENT_KINDS

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.status is not None:
            parts.append(str(self.status))
        if self.message:
            parts.append(self.message)
        return ": ".join(parts)


_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[_T]):
    value: _T


@dataclass(frozen=True, slots=True)
class Err:
    error: ApiError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Result = Union[Ok[_T], Err]


def error_from_status(
    status: int, *, reset_after: float = 0.0, message: str | None = None
) -> ApiError:
    """Map an HTTP status code onto the error taxonomy."""

    if status == 401:
        kind = ErrorKind.UNAUTHORIZED
    elif status == 403:
        kind = ErrorKind.FORBIDDEN
    elif status == 404:
        kind = ErrorKind.NOT_FOUND
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    else:
        kind = ErrorKind.IO
    return ApiError(
        kind=kind,
        status=status,
        reset_after=max(0.0, reset_after) if kind is ErrorKind.RATE_LIMITED else 0.0,
        message=message,
    )


def io_error(message: str | None = None) -> Err:
    return Err(ApiError(kind=ErrorKind.IO, message=message))


def timeout_error(message: str | None = None) -> Err:
    return Err(ApiError(kind=ErrorKind.TIMEOUT, message=message))
