from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    verification_failure = "verification_failure"
    duplicate_delivery = "duplicate_delivery"
    unresolvable_customer = "unresolvable_customer"
    no_product_match = "no_product_match"
    payment_verification_timeout = "payment_verification_timeout"
    outbound_send_failure = "outbound_send_failure"
    active_order_exists = "active_order_exists"
    illegal_transition = "illegal_transition"
    missing_contact = "missing_contact"
    not_found = "not_found"
    unroutable = "unroutable"
    internal = "internal"


class PipelineError(Exception):
    kind = ErrorKind.internal


class VerificationFailure(PipelineError):
    kind = ErrorKind.verification_failure


class DuplicateDelivery(PipelineError):
    kind = ErrorKind.duplicate_delivery


class UnresolvableCustomer(PipelineError):
    kind = ErrorKind.unresolvable_customer


class NoProductMatch(PipelineError):
    kind = ErrorKind.no_product_match


class PaymentVerificationTimeout(PipelineError):
    kind = ErrorKind.payment_verification_timeout


class OutboundSendFailure(PipelineError):
    kind = ErrorKind.outbound_send_failure


@dataclass
class Result(Generic[T]):
    """Outcome of a pipeline step; callers pick the fallback, not the callee."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise PipelineError(f"{self.error.value}: {self.detail or ''}")
        return self.value  # type: ignore[return-value]


def Ok(value: Any = None) -> Result:
    return Result(value=value)


def Err(kind: ErrorKind, detail: Optional[str] = None, value: Any = None) -> Result:
    return Result(value=value, error=kind, detail=detail)
