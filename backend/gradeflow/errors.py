"""Typed workflow failures and the `Result` wrapper returned by engines.

Workflow engines (approval, attempt session, grading) never raise for a
rejected transition. They return a `Result` whose `error` names what went
wrong, so the HTTP layer and the review surface can show a specific
remediation ("rejection requires notes") instead of a blanket failure.
Parsing at the boundary still raises `ValueError`.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, Optional, Tuple, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    INCOMPLETE_ATTEMPT = "incomplete_attempt"
    NOT_APPROVED = "not_approved"
    ALREADY_FINALIZED = "already_finalized"
    REMOTE_FAILURE = "remote_failure"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class Failure:
    """A typed, user-renderable failure."""
    code: ErrorCode
    message: str
    missing_indices: Tuple[int, ...] = ()
    retryable: bool = False

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "missing_indices": list(self.missing_indices),
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a `Failure`."""
    value: Optional[T] = None
    error: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: Failure) -> "Result[T]":
        return cls(error=error)


def invalid_transition(message: str) -> Failure:
    return Failure(ErrorCode.INVALID_TRANSITION, message)


def incomplete_attempt(missing: Iterable[int]) -> Failure:
    missing = tuple(sorted(missing))
    listed = ", ".join(str(i + 1) for i in missing)
    return Failure(ErrorCode.INCOMPLETE_ATTEMPT, f"unanswered questions: {listed}", missing_indices=missing)


def not_approved(message: str = "no assessment available") -> Failure:
    return Failure(ErrorCode.NOT_APPROVED, message)


def already_finalized() -> Failure:
    return Failure(ErrorCode.ALREADY_FINALIZED, "submission is already finalized")


def remote_failure(message: str) -> Failure:
    return Failure(ErrorCode.REMOTE_FAILURE, message, retryable=True)


def invalid_input(message: str) -> Failure:
    return Failure(ErrorCode.INVALID_INPUT, message)


def not_found(what: str) -> Failure:
    return Failure(ErrorCode.NOT_FOUND, f"{what} not found")


def forbidden(message: str) -> Failure:
    return Failure(ErrorCode.FORBIDDEN, message)
