from __future__ import annotations

import http.client
import json
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# What urlopen and response decoding can raise for a failed or cut-off request.
TRANSPORT_ERRORS = (OSError, ValueError, http.client.HTTPException)


class ErrorKind(str, Enum):
    transient = "transient"
    configuration = "configuration"
    invalid_response = "invalid_response"
    data_integrity = "data_integrity"


class CollaboratorError(RuntimeError):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class AlertDeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a call across a collaborator boundary.

    Exactly one of ``value`` or ``error_kind`` is meaningful. Collaborators
    return failures as values instead of raising, so callers decide whether a
    failure is fatal, retried, or replaced by a fallback.
    """

    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome[T]":
        return cls(error_kind=kind, error=message or kind.value)

    def unwrap(self) -> T:
        if not self.ok:
            raise CollaboratorError(self.error_kind, self.error or "")
        return self.value


def get_error_message(error: object, fallback: str = "") -> str:
    if isinstance(error, BaseException):
        return str(error) or fallback
    if isinstance(error, str):
        return error or fallback
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str):
            return message or fallback
        try:
            encoded = json.dumps(error, default=str)
        except (TypeError, ValueError):
            return fallback
        return fallback if encoded == "{}" else encoded
    if error is None:
        return fallback
    return str(error) or fallback
