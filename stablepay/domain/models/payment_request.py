from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from stablepay.domain.errors import InvalidTransitionError


class RequestStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class RequestKind(str, Enum):
    SINGLE = "single"
    # «Статический» код получения: без фиксированной суммы и с длинным окном
    STATIC = "static"


@dataclass(frozen=True, slots=True)
class PaymentRequest:

    id: str
    merchant_id: str
    amount: Optional[Decimal]
    currency: str
    status: RequestStatus
    created_at: datetime
    expires_at: datetime
    settled_transaction_id: Optional[str] = None
    label: Optional[str] = None
    kind: RequestKind = RequestKind.SINGLE

    @property
    def is_open_amount(self) -> bool:
        return self.amount is None

    def is_past_deadline(self, now: datetime) -> bool:
        # ровно в момент expires_at запрос уже просрочен
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class Transaction:

    id: str
    request_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    payer_ref: str
    completed_at: datetime
    label: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StatusEvent:
    request_id: str
    status: RequestStatus
    timestamp: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def as_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RequestFilter:
    status: Optional[RequestStatus] = None
    merchant_id: Optional[str] = None
    expires_at_or_before: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, request: PaymentRequest) -> bool:
        if self.status is not None and request.status is not self.status:
            return False
        if self.merchant_id is not None and request.merchant_id != self.merchant_id:
            return False
        if self.expires_at_or_before is not None and request.expires_at > self.expires_at_or_before:
            return False
        return True


_IMMUTABLE_FIELDS = ("id", "merchant_id", "amount", "currency", "created_at", "expires_at", "label", "kind")


def check_invariants(request: PaymentRequest) -> None:
    if request.expires_at <= request.created_at:
        raise InvalidTransitionError("expires_at must be later than created_at", request_id=request.id)
    has_tx = request.settled_transaction_id is not None
    if has_tx != (request.status is RequestStatus.PAID):
        raise InvalidTransitionError(
            "settled_transaction_id must be set if and only if the request is paid",
            request_id=request.id,
        )


def check_transition(before: PaymentRequest, after: PaymentRequest) -> None:
    """
    Разрешены только переходы pending → paid/expired/cancelled,
    неизменяемые поля трогать нельзя.
    """
    for name in _IMMUTABLE_FIELDS:
        if getattr(before, name) != getattr(after, name):
            raise InvalidTransitionError(f"field {name!r} is immutable", request_id=before.id)
    if before.status is not RequestStatus.PENDING or after.status is RequestStatus.PENDING:
        raise InvalidTransitionError(
            f"transition {before.status.value} -> {after.status.value} is not allowed",
            request_id=before.id,
        )
    check_invariants(after)
