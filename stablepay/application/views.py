from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from stablepay.domain.models.payment_request import PaymentRequest, RequestStatus, Transaction


def format_amount(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class PaymentRequestView:
    id: str
    status: str
    amount: Optional[Decimal]
    currency: str
    created_at: datetime
    expires_at: datetime
    seconds_remaining: int
    merchant_id: str
    label: Optional[str]
    kind: str
    settled_transaction_id: Optional[str]

    @classmethod
    def from_request(cls, request: PaymentRequest, now: datetime) -> "PaymentRequestView":
        """
        seconds_remaining считается при чтении и не хранится: 0 для закрытых запросов.
        """
        remaining = 0
        if request.status is RequestStatus.PENDING:
            remaining = max(0, math.floor((request.expires_at - now).total_seconds()))
        return cls(
            id=request.id,
            status=request.status.value,
            amount=request.amount,
            currency=request.currency,
            created_at=request.created_at,
            expires_at=request.expires_at,
            seconds_remaining=remaining,
            merchant_id=request.merchant_id,
            label=request.label,
            kind=request.kind.value,
            settled_transaction_id=request.settled_transaction_id,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "seconds_remaining": self.seconds_remaining,
            "merchant_id": self.merchant_id,
            "label": self.label,
            "kind": self.kind,
            "settled_transaction_id": self.settled_transaction_id,
        }


@dataclass(frozen=True)
class TransactionView:
    id: str
    request_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    payer_ref: str
    completed_at: datetime
    label: Optional[str]

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionView":
        return cls(
            id=tx.id,
            request_id=tx.request_id,
            merchant_id=tx.merchant_id,
            amount=tx.amount,
            currency=tx.currency,
            payer_ref=tx.payer_ref,
            completed_at=tx.completed_at,
            label=tx.label,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "merchant_id": self.merchant_id,
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "payer_ref": self.payer_ref,
            "completed_at": self.completed_at.isoformat(),
            "label": self.label,
        }
