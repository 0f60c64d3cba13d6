from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from stablepay.application.service import CreateRequestInput, PaymentRequestService

router = APIRouter(tags=["payment-requests"])
log = logging.getLogger("api.http")


def get_service(request: Request) -> PaymentRequestService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateRequestBody(BaseModel):
    merchant_id: str
    currency: str = "USDC"
    amount: Optional[Decimal] = None
    label: Optional[str] = None


class CreateStaticBody(BaseModel):
    merchant_id: str
    currency: str = "USDC"
    label: Optional[str] = None


class SettleBody(BaseModel):
    payer_ref: str
    amount: Decimal
    currency: str


class CancelBody(BaseModel):
    merchant_id: Optional[str] = None


class DecodeBody(BaseModel):
    payload: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/payment-requests", status_code=201)
async def create_request(body: CreateRequestBody, service: PaymentRequestService = Depends(get_service)):
    """Merchant POS: новый запрос на оплату + payload для QR."""
    out = await service.create_request(
        CreateRequestInput(
            merchant_id=body.merchant_id,
            currency=body.currency,
            amount=body.amount,
            label=body.label,
        )
    )
    return {"request": out.request.as_dict(), "payload": out.payload}


@router.post("/payment-requests/static", status_code=201)
async def create_static_request(body: CreateStaticBody, service: PaymentRequestService = Depends(get_service)):
    """Экран «Получить»: код без суммы с длинным сроком жизни."""
    out = await service.create_static_request(body.merchant_id, body.currency, label=body.label)
    return {"request": out.request.as_dict(), "payload": out.payload}


@router.get("/payment-requests/{request_id}")
async def get_request(request_id: str, service: PaymentRequestService = Depends(get_service)):
    view = await service.get_request(request_id)
    return view.as_dict()


@router.get("/payment-requests/{request_id}/payload")
async def get_payload(request_id: str, service: PaymentRequestService = Depends(get_service)):
    return {"payload": await service.encode_payload(request_id)}


@router.post("/payment-requests/{request_id}/settle")
async def settle_request(
    request_id: str,
    body: SettleBody,
    service: PaymentRequestService = Depends(get_service),
):
    tx = await service.settle_request(request_id, body.payer_ref, body.amount, body.currency)
    return tx.as_dict()


@router.post("/payment-requests/{request_id}/cancel")
async def cancel_request(
    request_id: str,
    body: CancelBody,
    service: PaymentRequestService = Depends(get_service),
):
    view = await service.cancel_request(request_id, body.merchant_id)
    return view.as_dict()


@router.get("/payment-requests/{request_id}/events")
async def request_events(request_id: str, service: PaymentRequestService = Depends(get_service)):
    """
    Server-sent events для экрана ожидания оплаты.
    Поток закрывается после терминального статуса (paid/expired/cancelled).
    """
    stream = await service.subscribe(request_id)

    async def _sse():
        try:
            async for event in stream:
                yield f"event: status\ndata: {json.dumps(event.as_dict())}\n\n"
        finally:
            await stream.aclose()

    return StreamingResponse(_sse(), media_type="text/event-stream")


@router.post("/payloads/decode")
async def decode_payload(body: DecodeBody, service: PaymentRequestService = Depends(get_service)):
    """Сканер: разобрать QR-payload (без оплаты)."""
    return service.decode_payload(body.payload).as_dict()


@router.get("/transactions")
async def list_transactions(
    merchant_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    service: PaymentRequestService = Depends(get_service),
):
    txs = await service.list_transactions(merchant_id=merchant_id, limit=limit)
    return {"items": [t.as_dict() for t in txs]}


@router.get("/stats")
async def stats(
    merchant_id: Optional[str] = Query(default=None),
    service: PaymentRequestService = Depends(get_service),
):
    return await service.summary(merchant_id=merchant_id)
