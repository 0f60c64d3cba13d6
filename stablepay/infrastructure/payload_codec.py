"""
Содержимое QR-кода запроса на оплату.

Формат v1: base64 от компактного JSON
    {"v": 1, "type": "payment", "id": ..., "merchant": ..., "currency": ...,
     "amount": "12.50" | null, "expires_at": "<ISO 8601>", "label": ...}

Payload только описывает запрос: секретов в нём нет, и предъявление кода
само по себе ничего не оплачивает, только settle() по id.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from stablepay.domain.errors import MalformedPayloadError
from stablepay.domain.models.payment_request import PaymentRequest

PAYLOAD_VERSION = 1
PAYLOAD_TYPE = "payment"


@dataclass(frozen=True)
class DecodedPayload:
    version: int
    request_id: str
    merchant_id: str
    currency: str
    amount: Optional[Decimal]
    expires_at: datetime
    label: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "id": self.request_id,
            "merchant_id": self.merchant_id,
            "currency": self.currency,
            "amount": None if self.amount is None else str(self.amount),
            "expires_at": self.expires_at.isoformat(),
            "label": self.label,
        }


def encode_payload(request: PaymentRequest) -> str:
    data: dict[str, Any] = {
        "v": PAYLOAD_VERSION,
        "type": PAYLOAD_TYPE,
        "id": request.id,
        "merchant": request.merchant_id,
        "currency": request.currency,
        "amount": None if request.amount is None else str(request.amount),
        "expires_at": request.expires_at.isoformat(),
    }
    if request.label:
        data["label"] = request.label
    raw = json.dumps(data, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_payload(payload: str) -> DecodedPayload:
    if not isinstance(payload, str) or not payload.strip():
        raise MalformedPayloadError("empty payment code")
    text = payload.strip()
    # допускаем потерянный паддинг (QR-сканеры его иногда обрезают)
    text += "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(text, validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise MalformedPayloadError("payment code is not readable") from exc

    if not isinstance(data, dict):
        raise MalformedPayloadError("payment code is not readable")
    if data.get("v") != PAYLOAD_VERSION:
        raise MalformedPayloadError(f"unsupported payment code version: {data.get('v')!r}")
    if data.get("type") != PAYLOAD_TYPE:
        raise MalformedPayloadError(f"unsupported payment code type: {data.get('type')!r}")

    request_id = _required_str(data, "id")
    merchant_id = _required_str(data, "merchant")
    currency = _required_str(data, "currency")

    amount_raw = data.get("amount")
    amount: Optional[Decimal] = None
    if amount_raw is not None:
        if not isinstance(amount_raw, str):
            raise MalformedPayloadError("amount must be a decimal string")
        try:
            amount = Decimal(amount_raw)
        except InvalidOperation as exc:
            raise MalformedPayloadError(f"bad amount: {amount_raw!r}") from exc
        if not amount.is_finite() or amount < 0:
            raise MalformedPayloadError(f"bad amount: {amount_raw!r}")

    expires_raw = _required_str(data, "expires_at")
    try:
        expires_at = datetime.fromisoformat(expires_raw)
    except ValueError as exc:
        raise MalformedPayloadError(f"bad expires_at: {expires_raw!r}") from exc
    if expires_at.tzinfo is None:
        raise MalformedPayloadError("expires_at must carry a timezone")

    label = data.get("label")
    if label is not None and not isinstance(label, str):
        raise MalformedPayloadError("label must be a string")

    return DecodedPayload(
        version=PAYLOAD_VERSION,
        request_id=request_id,
        merchant_id=merchant_id,
        currency=currency,
        amount=amount,
        expires_at=expires_at,
        label=label,
    )


def _required_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedPayloadError(f"missing field: {key}")
    return value
