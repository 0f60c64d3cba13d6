import base64
import json
from decimal import Decimal

import pytest

from stablepay.domain.errors import MalformedPayloadError
from stablepay.infrastructure.payload_codec import decode_payload, encode_payload


def _b64(data) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


@pytest.mark.asyncio
async def test_fixed_and_open_amount_roundtrip(engine):
    fixed = await engine.create("merchant-1", "12.50", "USDC", label="Coffee Shop")
    open_ = await engine.create_static("merchant-1", "USDT")

    decoded = decode_payload(encode_payload(fixed))
    assert (decoded.request_id, decoded.currency, decoded.amount, decoded.expires_at) == (
        fixed.id,
        "USDC",
        Decimal("12.50"),
        fixed.expires_at,
    )
    assert str(decoded.amount) == "12.50"
    assert decoded.label == "Coffee Shop"
    assert decoded.version == 1

    decoded_open = decode_payload(encode_payload(open_))
    assert decoded_open.amount is None
    assert decoded_open.merchant_id == "merchant-1"


@pytest.mark.asyncio
async def test_payload_is_versioned_json_without_secrets(engine):
    req = await engine.create("merchant-1", "1", "USDC")
    data = json.loads(base64.b64decode(encode_payload(req)))

    assert data["v"] == 1
    assert data["type"] == "payment"
    assert set(data) == {"v", "type", "id", "merchant", "currency", "amount", "expires_at"}


@pytest.mark.asyncio
async def test_missing_padding_is_tolerated(engine):
    req = await engine.create("merchant-1", "7", "USDC")
    assert decode_payload(encode_payload(req).rstrip("=")).request_id == req.id


VALID = {
    "v": 1,
    "type": "payment",
    "id": "REQ1",
    "merchant": "m",
    "currency": "USDC",
    "amount": "1.00",
    "expires_at": "2024-01-01T12:15:00+00:00",
}


@pytest.mark.parametrize(
    "payload",
    [
        "",
        "not base64 !!!",
        base64.b64encode(b"not json").decode(),
        _b64([1, 2, 3]),
        _b64({**VALID, "v": 2}),
        _b64({**VALID, "type": "transfer"}),
        _b64({k: v for k, v in VALID.items() if k != "id"}),
        _b64({**VALID, "amount": 1.0}),
        _b64({**VALID, "amount": "-3"}),
        _b64({**VALID, "amount": "lots"}),
        _b64({**VALID, "expires_at": "tomorrow"}),
        _b64({**VALID, "expires_at": "2024-01-01T12:15:00"}),
    ],
)
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(MalformedPayloadError):
        decode_payload(payload)


def test_valid_handwritten_payload_decodes():
    decoded = decode_payload(_b64(VALID))
    assert decoded.amount == Decimal("1.00")
    assert decoded.expires_at.isoformat() == "2024-01-01T12:15:00+00:00"
