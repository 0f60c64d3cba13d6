from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional

from stablepay.application.lifecycle import LifecycleEngine
from stablepay.application.views import PaymentRequestView, TransactionView
from stablepay.domain.clock import SystemClock
from stablepay.domain.models.payment_request import RequestFilter, RequestStatus, StatusEvent
from stablepay.infrastructure.notifications.hub import NotificationHub
from stablepay.infrastructure.notifications.webhook import WebhookNotifier
from stablepay.infrastructure.payload_codec import DecodedPayload, decode_payload, encode_payload
from stablepay.infrastructure.store.base import RequestStore
from stablepay.infrastructure.store.memory import InMemoryRequestStore
from stablepay.settings import Settings, settings as default_settings

log = logging.getLogger("payments.lifecycle")


@dataclass
class CreateRequestInput:
    merchant_id: str
    currency: str
    amount: Any = None
    label: Optional[str] = None


@dataclass
class CreateRequestOutput:
    request: PaymentRequestView
    payload: str


class PaymentRequestService:
    """
    То, что видит UI: создать/прочитать/оплатить/отменить запрос, подписка на статус,
    QR-payload, история транзакций и сводка для админ-дашборда.
    Наружу отдаются только view-объекты.
    """

    def __init__(self, engine: LifecycleEngine) -> None:
        self.engine = engine

    def _view(self, request) -> PaymentRequestView:
        return PaymentRequestView.from_request(request, self.engine.clock.now())

    async def create_request(self, data: CreateRequestInput) -> CreateRequestOutput:
        request = await self.engine.create(
            data.merchant_id,
            data.amount,
            data.currency,
            label=data.label,
        )
        return CreateRequestOutput(request=self._view(request), payload=encode_payload(request))

    async def create_static_request(
        self,
        merchant_id: str,
        currency: str,
        *,
        label: Optional[str] = None,
    ) -> CreateRequestOutput:
        request = await self.engine.create_static(merchant_id, currency, label=label)
        return CreateRequestOutput(request=self._view(request), payload=encode_payload(request))

    async def get_request(self, request_id: str) -> PaymentRequestView:
        return self._view(await self.engine.query(request_id))

    async def settle_request(
        self,
        request_id: str,
        payer_ref: str,
        amount: Any,
        currency: str,
    ) -> TransactionView:
        tx = await self.engine.settle(request_id, payer_ref, amount, currency)
        return TransactionView.from_transaction(tx)

    async def cancel_request(self, request_id: str, merchant_id: Optional[str] = None) -> PaymentRequestView:
        return self._view(await self.engine.cancel(request_id, merchant_id))

    async def subscribe(self, request_id: str) -> AsyncIterator[StatusEvent]:
        return await self.engine.subscribe(request_id)

    async def encode_payload(self, request_id: str) -> str:
        return encode_payload(await self.engine.query(request_id))

    def decode_payload(self, payload: str) -> DecodedPayload:
        return decode_payload(payload)

    async def list_transactions(
        self,
        *,
        merchant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[TransactionView]:
        txs = await self.engine.list_transactions(merchant_id=merchant_id, limit=limit)
        return [TransactionView.from_transaction(t) for t in txs]

    async def summary(self, *, merchant_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Сводка для дашборда: сколько запросов в каждом статусе и оборот по валютам.
        Просроченные, но ещё не «подметённые» запросы сначала закрываем.
        """
        await self.engine.sweep_expired()

        requests = await self.engine.list_requests(RequestFilter(merchant_id=merchant_id))
        by_status = {s.value: 0 for s in RequestStatus}
        for r in requests:
            by_status[r.status.value] += 1

        volume: Dict[str, Decimal] = {}
        txs = await self.engine.list_transactions(merchant_id=merchant_id)
        for t in txs:
            volume[t.currency] = volume.get(t.currency, Decimal("0")) + t.amount

        return {
            "requests_total": len(requests),
            "requests_by_status": by_status,
            "transactions_total": len(txs),
            "volume_by_currency": {cur: str(v) for cur, v in sorted(volume.items())},
        }


def build_store(cfg: Settings) -> RequestStore:
    if cfg.STORE_BACKEND == "sql":
        from stablepay.infrastructure.db.base import make_engine
        from stablepay.infrastructure.db.repositories.payment_request_repo import SqlRequestStore

        return SqlRequestStore(make_engine(cfg.DATABASE_URL))
    if cfg.STORE_BACKEND != "memory":
        raise RuntimeError(f"Unknown STORE_BACKEND={cfg.STORE_BACKEND!r}, expected 'memory' or 'sql'")
    return InMemoryRequestStore()


def build_service(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[RequestStore] = None,
    clock=None,
) -> PaymentRequestService:
    cfg = cfg or default_settings
    hub = NotificationHub()
    if cfg.WEBHOOK_URL:
        hub.add_listener(
            WebhookNotifier(
                cfg.WEBHOOK_URL,
                timeout=cfg.WEBHOOK_TIMEOUT_SEC,
                verify=cfg.WEBHOOK_VERIFY_SSL,
            )
        )
        log.info("Status webhook enabled: %s", cfg.WEBHOOK_URL)
    engine = LifecycleEngine(
        store or build_store(cfg),
        hub,
        clock or SystemClock(),
        validity=timedelta(seconds=cfg.REQUEST_TTL_SEC),
        static_validity=timedelta(seconds=cfg.STATIC_REQUEST_TTL_SEC),
        currencies=cfg.SUPPORTED_CURRENCIES,
    )
    return PaymentRequestService(engine)
