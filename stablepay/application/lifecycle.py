from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Callable, Iterable, Optional

from stablepay.domain.clock import SystemClock
from stablepay.domain.errors import (
    AlreadySettledError,
    ConflictError,
    DuplicateIdError,
    ForbiddenError,
    PaymentMismatchError,
    RequestCancelledError,
    RequestClosedError,
    RequestExpiredError,
    ValidationError,
)
from stablepay.domain.models.payment_request import (
    PaymentRequest,
    RequestFilter,
    RequestKind,
    RequestStatus,
    StatusEvent,
    Transaction,
)
from stablepay.infrastructure.notifications.hub import NotificationHub
from stablepay.infrastructure.store.base import RequestStore

DEFAULT_VALIDITY = timedelta(minutes=15)
DEFAULT_STATIC_VALIDITY = timedelta(days=30)
DEFAULT_CURRENCIES = ("USDT", "USDC")
MAX_AMOUNT_DECIMALS = 6  # точность USDT/USDC
MAX_LABEL_LENGTH = 128
MAX_ID_ATTEMPTS = 5


def new_request_id() -> str:
    return "REQ" + uuid.uuid4().hex[:24].upper()


def new_transaction_id() -> str:
    return "TX" + uuid.uuid4().hex[:24].upper()


class LifecycleEngine:
    """
    Машина состояний запроса на оплату: pending → paid | expired | cancelled.

    - все изменения идут через RequestStore.compare_and_transition();
    - просрочка ленивая: проверяется при settle/cancel/query, плюс периодический sweep_expired();
    - при равенстве now == expires_at побеждает просрочка;
    - событие в NotificationHub публикуется только тем, кто выиграл переход.
    """

    def __init__(
        self,
        store: RequestStore,
        hub: Optional[NotificationHub] = None,
        clock=None,
        *,
        validity: timedelta = DEFAULT_VALIDITY,
        static_validity: timedelta = DEFAULT_STATIC_VALIDITY,
        currencies: Iterable[str] = DEFAULT_CURRENCIES,
        id_factory: Callable[[], str] = new_request_id,
        tx_id_factory: Callable[[], str] = new_transaction_id,
    ) -> None:
        if validity <= timedelta(0) or static_validity <= timedelta(0):
            raise ValueError("validity window must be positive")
        self.store = store
        self.hub = hub or NotificationHub()
        self.clock = clock or SystemClock()
        self.validity = validity
        self.static_validity = static_validity
        self.currencies = tuple(c.upper() for c in currencies)
        self._id_factory = id_factory
        self._tx_id_factory = tx_id_factory
        self.log = logging.getLogger("payments.lifecycle")

    # ---------- Create ----------

    async def create(
        self,
        merchant_id: str,
        amount=None,
        currency: str = "USDC",
        *,
        label: Optional[str] = None,
        validity: Optional[timedelta] = None,
        kind: RequestKind = RequestKind.SINGLE,
    ) -> PaymentRequest:
        merchant_id = self._validate_merchant(merchant_id)
        currency = self._validate_currency(currency)
        amount = self._parse_amount(amount, field="amount")
        label = self._validate_label(label)
        window = validity if validity is not None else self.validity
        if window <= timedelta(0):
            raise ValidationError("validity window must be positive")

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            created_at = self.clock.now()
            request = PaymentRequest(
                id=self._id_factory(),
                merchant_id=merchant_id,
                amount=amount,
                currency=currency,
                status=RequestStatus.PENDING,
                created_at=created_at,
                expires_at=created_at + window,
                label=label,
                kind=kind,
            )
            try:
                await self.store.insert(request)
            except DuplicateIdError:
                self.log.warning("Duplicate request id=%s, regenerating (attempt %s)", request.id, attempt)
                if attempt == MAX_ID_ATTEMPTS:
                    raise
                continue
            break

        self.log.info(
            "Created request id=%s merchant=%s amount=%s %s expires_at=%s",
            request.id,
            merchant_id,
            "open" if amount is None else amount,
            currency,
            request.expires_at.isoformat(),
        )
        self._publish(request, created_at)
        return request

    async def create_static(
        self,
        merchant_id: str,
        currency: str = "USDC",
        *,
        label: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Статический код «Получить»: сумму выбирает плательщик, окно длинное.
        Оплатить его всё равно можно только один раз.
        """
        return await self.create(
            merchant_id,
            None,
            currency,
            label=label,
            validity=self.static_validity,
            kind=RequestKind.STATIC,
        )

    # ---------- Read ----------

    async def query(self, request_id: str) -> PaymentRequest:
        request = await self.store.get(request_id)
        return await self._expire_if_due(request)

    async def list_requests(self, flt: Optional[RequestFilter] = None) -> list[PaymentRequest]:
        return await self.store.list(flt)

    async def list_transactions(
        self,
        *,
        merchant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        return await self.store.list_transactions(merchant_id=merchant_id, limit=limit)

    async def subscribe(self, request_id: str) -> AsyncIterator[StatusEvent]:
        request = await self.query(request_id)
        # статус из хранилища: хаб помнит только активные и недавно закрытые запросы
        return self.hub.subscribe(request_id, StatusEvent(request_id, request.status, self.clock.now()))

    # ---------- Settle ----------

    async def settle(
        self,
        request_id: str,
        payer_ref: str,
        paid_amount,
        paid_currency: str,
    ) -> Transaction:
        request = await self.store.get(request_id)
        request = await self._expire_if_due(request)
        if request.status is not RequestStatus.PENDING:
            raise self._closed_error(request_id, request.status)

        payer_ref = (payer_ref or "").strip() if isinstance(payer_ref, str) else ""
        if not payer_ref:
            raise ValidationError("payer reference is required", request_id=request_id)
        paid_amount = self._parse_amount(paid_amount, field="paid amount")
        if paid_amount is None:
            raise PaymentMismatchError("paid amount is required", request_id=request_id)
        if not isinstance(paid_currency, str) or paid_currency.strip().upper() != request.currency:
            raise PaymentMismatchError(
                f"this code accepts {request.currency} only", request_id=request_id
            )
        if request.amount is not None and paid_amount != request.amount:
            raise PaymentMismatchError(
                f"amount must be exactly {request.amount} {request.currency}", request_id=request_id
            )
        if request.amount is None and paid_amount <= 0:
            raise PaymentMismatchError("amount must be greater than zero", request_id=request_id)

        settled: list[Transaction] = []
        paid_at: list[datetime] = []

        def _pay(current: PaymentRequest) -> PaymentRequest:
            now = self.clock.now()
            if current.is_past_deadline(now):
                raise RequestExpiredError(request_id=request_id)
            paid_at.append(now)
            return replace(current, status=RequestStatus.PAID, settled_transaction_id=self._tx_id_factory())

        def _transaction(paid: PaymentRequest) -> Transaction:
            tx = Transaction(
                id=paid.settled_transaction_id,
                request_id=request_id,
                merchant_id=paid.merchant_id,
                amount=paid_amount,
                currency=paid.currency,
                payer_ref=payer_ref,
                completed_at=paid_at[-1],
                label=paid.label,
            )
            settled.append(tx)
            return tx

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            settled.clear()
            try:
                paid = await self.store.compare_and_transition(
                    request_id, RequestStatus.PENDING, _pay, transaction=_transaction
                )
            except DuplicateIdError:
                self.log.warning("Duplicate transaction id for request id=%s (attempt %s)", request_id, attempt)
                if attempt == MAX_ID_ATTEMPTS:
                    raise
                continue
            except RequestExpiredError:
                # дедлайн наступил между чтением и переходом
                await self._expire_if_due(await self.store.get(request_id))
                raise
            except ConflictError as exc:
                self.log.info("Settle lost race id=%s status=%s", request_id, exc.current_status)
                raise self._closed_error(request_id, exc.current_status) from exc
            break

        tx = settled[-1]
        self.log.info(
            "Settled request id=%s tx=%s amount=%s %s payer=%s",
            request_id,
            tx.id,
            paid_amount,
            paid.currency,
            payer_ref,
        )
        self._publish(paid, tx.completed_at)
        return tx

    # ---------- Cancel ----------

    async def cancel(self, request_id: str, requester_merchant_id: Optional[str] = None) -> PaymentRequest:
        request = await self.store.get(request_id)
        if requester_merchant_id is not None and requester_merchant_id != request.merchant_id:
            raise ForbiddenError(request_id=request_id)
        request = await self._expire_if_due(request)
        if request.status is not RequestStatus.PENDING:
            raise self._closed_error(request_id, request.status)

        try:
            cancelled = await self.store.compare_and_transition(
                request_id,
                RequestStatus.PENDING,
                lambda current: replace(current, status=RequestStatus.CANCELLED),
            )
        except ConflictError as exc:
            raise self._closed_error(request_id, exc.current_status) from exc

        self.log.info("Cancelled request id=%s merchant=%s", request_id, request.merchant_id)
        self._publish(cancelled, self.clock.now())
        return cancelled

    # ---------- Expiry ----------

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        due = await self.store.list(
            RequestFilter(status=RequestStatus.PENDING, expires_at_or_before=now)
        )
        expired = 0
        for request in due:
            try:
                await self.store.compare_and_transition(
                    request.id,
                    RequestStatus.PENDING,
                    lambda current: replace(current, status=RequestStatus.EXPIRED),
                )
            except ConflictError:
                # уже оплачен/отменён/просрочен параллельно
                continue
            expired += 1
            self.hub.publish(request.id, StatusEvent(request.id, RequestStatus.EXPIRED, now))
        if expired:
            self.log.info("Sweep expired %s request(s)", expired)
        return expired

    async def _expire_if_due(self, request: PaymentRequest) -> PaymentRequest:
        now = self.clock.now()
        if request.status is not RequestStatus.PENDING or not request.is_past_deadline(now):
            return request
        try:
            expired = await self.store.compare_and_transition(
                request.id,
                RequestStatus.PENDING,
                lambda current: replace(current, status=RequestStatus.EXPIRED),
            )
        except ConflictError:
            return await self.store.get(request.id)
        self.log.info("Lazily expired request id=%s", request.id)
        self._publish(expired, now)
        return expired

    # ---------- helpers ----------

    def _publish(self, request: PaymentRequest, at: datetime) -> None:
        self.hub.publish(request.id, StatusEvent(request.id, request.status, at))

    @staticmethod
    def _closed_error(request_id: str, status: Optional[RequestStatus]) -> RequestClosedError:
        if status is RequestStatus.PAID:
            return AlreadySettledError(request_id=request_id)
        if status is RequestStatus.EXPIRED:
            return RequestExpiredError(request_id=request_id)
        if status is RequestStatus.CANCELLED:
            return RequestCancelledError(request_id=request_id)
        return RequestClosedError(request_id=request_id)

    def _validate_currency(self, currency) -> str:
        code = currency.strip().upper() if isinstance(currency, str) else ""
        if code not in self.currencies:
            raise ValidationError(
                f"unsupported currency {currency!r}, expected one of {', '.join(self.currencies)}"
            )
        return code

    @staticmethod
    def _validate_merchant(merchant_id) -> str:
        if not isinstance(merchant_id, str) or not merchant_id.strip():
            raise ValidationError("merchant id is required")
        return merchant_id.strip()

    @staticmethod
    def _validate_label(label) -> Optional[str]:
        if label is None:
            return None
        if not isinstance(label, str):
            raise ValidationError("label must be a string")
        label = label.strip()
        if len(label) > MAX_LABEL_LENGTH:
            raise ValidationError(f"label is longer than {MAX_LABEL_LENGTH} characters")
        return label or None

    @staticmethod
    def _parse_amount(value, *, field: str) -> Optional[Decimal]:
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be a number")
        if isinstance(value, str) and not value.strip():
            raise ValidationError(f"{field} must be a number")
        try:
            amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
        except InvalidOperation as exc:
            raise ValidationError(f"{field} must be a number") from exc
        if not amount.is_finite():
            raise ValidationError(f"{field} must be finite")
        if amount < 0:
            raise ValidationError(f"{field} must not be negative")
        if _fraction_digits(amount) > MAX_AMOUNT_DECIMALS:
            raise ValidationError(f"{field} has more than {MAX_AMOUNT_DECIMALS} decimal places")
        return amount


def _fraction_digits(amount: Decimal) -> int:
    # без normalize(): он округляет до точности контекста (28 знаков)
    if not amount:
        return 0
    _, digits, exponent = amount.as_tuple()
    places = max(-exponent, 0)
    for digit in reversed(digits):
        if places == 0 or digit != 0:
            break
        places -= 1
    return places
