from dataclasses import dataclass, field
from enum import Enum
from typing import List


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    UPSTREAM_FAILURE = "upstream_failure"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    kind: ErrorKind = ErrorKind.VALIDATION

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = "https://example.com/problems/validation-error"
    kind: ErrorKind = ErrorKind.VALIDATION


@dataclass
class AuthorizationError(DomainError):
    title: str = "Forbidden"
    type: str = "https://example.com/problems/authorization-error"
    kind: ErrorKind = ErrorKind.AUTHORIZATION


@dataclass
class StateConflictError(DomainError):
    title: str = "State Conflict"
    type: str = "https://example.com/problems/state-conflict"
    kind: ErrorKind = ErrorKind.STATE_CONFLICT


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = "https://example.com/problems/not-found"
    kind: ErrorKind = ErrorKind.NOT_FOUND


@dataclass
class UpstreamError(DomainError):
    title: str = "Upstream Failure"
    type: str = "https://example.com/problems/upstream-failure"
    kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE


@dataclass
class PaymentProcessorError(UpstreamError):
    title: str = "Payment Processor Error"
    processor_code: str | None = field(default=None)
