from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from stablepay.domain.errors import ConflictError, DuplicateIdError, NotFoundError
from stablepay.domain.models.payment_request import (
    PaymentRequest,
    RequestFilter,
    RequestKind,
    RequestStatus,
    Transaction,
    check_invariants,
    check_transition,
)
from stablepay.infrastructure.db.base import Base, make_sessionmaker, session_ctx
from stablepay.infrastructure.db.tables import PaymentRequestRow, TransactionRow
from stablepay.infrastructure.store.base import Mutator, RequestStore, TransactionFactory

log = logging.getLogger("payments.store")


class SqlRequestStore(RequestStore):
    """
    Хранилище поверх таблиц payment_requests / payment_transactions.

    compare_and_transition(): условный UPDATE ... WHERE status = :expected:
    из двух конкурентных попыток строку обновит только одна (rowcount == 1),
    вторая получит ConflictError с фактическим статусом.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = make_sessionmaker(engine)

    async def create_schema(self) -> None:
        """Для тестов; в рабочей БД схему ведут миграции Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ---------- Requests ----------

    async def insert(self, request: PaymentRequest) -> None:
        check_invariants(request)
        try:
            async with session_ctx(self._sessions) as s:
                s.add(self._request_to_row(request))
        except IntegrityError as exc:
            raise DuplicateIdError(
                f"request id {request.id} already exists", request_id=request.id
            ) from exc

    async def get(self, request_id: str) -> PaymentRequest:
        async with self._sessions() as s:
            row = await self._load(s, request_id)
        return self._row_to_request(row)

    async def compare_and_transition(
        self,
        request_id: str,
        expected: RequestStatus,
        mutator: Mutator,
        *,
        transaction: Optional[TransactionFactory] = None,
    ) -> PaymentRequest:
        try:
            async with session_ctx(self._sessions) as s:
                current = self._row_to_request(await self._load(s, request_id))
                if current.status is not expected:
                    raise self._conflict(request_id, expected, current.status)

                updated = mutator(current)
                check_transition(current, updated)

                res = await s.execute(
                    update(PaymentRequestRow)
                    .where(
                        PaymentRequestRow.id == request_id,
                        PaymentRequestRow.status == expected.value,
                    )
                    .values(
                        status=updated.status.value,
                        settled_transaction_id=updated.settled_transaction_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    # параллельная транзакция успела раньше, перечитываем фактический статус
                    raced = await self._load(s, request_id)
                    raise self._conflict(request_id, expected, RequestStatus(raced.status))
                if transaction is not None:
                    # та же сессия: строка истории коммитится вместе со сменой статуса
                    s.add(self._transaction_to_row(transaction(updated)))
        except IntegrityError as exc:
            # откат: статус остался прежним
            raise DuplicateIdError(
                f"transaction id for request {request_id} already exists", request_id=request_id
            ) from exc

        log.debug("transition id=%s %s -> %s", request_id, current.status.value, updated.status.value)
        return updated

    async def list(self, flt: Optional[RequestFilter] = None) -> list[PaymentRequest]:
        flt = flt or RequestFilter()
        q = select(PaymentRequestRow)
        if flt.status is not None:
            q = q.where(PaymentRequestRow.status == flt.status.value)
        if flt.merchant_id is not None:
            q = q.where(PaymentRequestRow.merchant_id == flt.merchant_id)
        if flt.expires_at_or_before is not None:
            q = q.where(PaymentRequestRow.expires_at <= _to_utc(flt.expires_at_or_before))
        q = q.order_by(PaymentRequestRow.created_at.asc(), PaymentRequestRow.id.asc())
        if flt.limit is not None:
            q = q.limit(flt.limit)
        async with self._sessions() as s:
            res = await s.execute(q)
            rows = res.scalars().all()
        return [self._row_to_request(r) for r in rows]

    # ---------- Transactions ----------

    async def record_transaction(self, tx: Transaction) -> None:
        async with session_ctx(self._sessions) as s:
            s.add(self._transaction_to_row(tx))

    async def list_transactions(
        self,
        *,
        merchant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        q = select(TransactionRow)
        if merchant_id is not None:
            q = q.where(TransactionRow.merchant_id == merchant_id)
        q = q.order_by(TransactionRow.completed_at.desc(), TransactionRow.id.desc())
        if limit is not None:
            q = q.limit(limit)
        async with self._sessions() as s:
            res = await s.execute(q)
            rows = res.scalars().all()
        return [
            Transaction(
                id=r.id,
                request_id=r.request_id,
                merchant_id=r.merchant_id,
                amount=Decimal(r.amount),
                currency=r.currency,
                payer_ref=r.payer_ref,
                completed_at=_to_aware(r.completed_at),
                label=r.label,
            )
            for r in rows
        ]

    # ---------- helpers ----------

    @staticmethod
    async def _load(s: AsyncSession, request_id: str) -> PaymentRequestRow:
        res = await s.execute(
            select(PaymentRequestRow)
            .where(PaymentRequestRow.id == request_id)
            .execution_options(populate_existing=True)
        )
        row = res.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"payment request {request_id} not found", request_id=request_id)
        return row

    @staticmethod
    def _conflict(request_id: str, expected: RequestStatus, current: RequestStatus) -> ConflictError:
        return ConflictError(
            f"payment request {request_id} is {current.value}, expected {expected.value}",
            request_id=request_id,
            current_status=current,
        )

    @staticmethod
    def _request_to_row(request: PaymentRequest) -> PaymentRequestRow:
        return PaymentRequestRow(
            id=request.id,
            merchant_id=request.merchant_id,
            amount=None if request.amount is None else str(request.amount),
            currency=request.currency,
            status=request.status.value,
            kind=request.kind.value,
            label=request.label,
            settled_transaction_id=request.settled_transaction_id,
            created_at=_to_utc(request.created_at),
            expires_at=_to_utc(request.expires_at),
        )

    @staticmethod
    def _transaction_to_row(tx: Transaction) -> TransactionRow:
        return TransactionRow(
            id=tx.id,
            request_id=tx.request_id,
            merchant_id=tx.merchant_id,
            amount=str(tx.amount),
            currency=tx.currency,
            payer_ref=tx.payer_ref,
            label=tx.label,
            completed_at=_to_utc(tx.completed_at),
        )

    @staticmethod
    def _row_to_request(
row: PaymentRequestRow) -> PaymentRequest:
        return PaymentRequest(
            id=row.id,
            merchant_id=row.merchant_id,
            amount=None if row.amount is None else Decimal(row.amount),
            currency=row.currency,
            status=RequestStatus(row.status),
            created_at=_to_aware(row.created_at),
            expires_at=_to_aware(row.expires_at),
            settled_transaction_id=row.settled_transaction_id,
            label=row.label,
            kind=RequestKind(row.kind),
        )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_aware(value: datetime) -> datetime:
    # SQLite возвращает naive datetime, всё храним в UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
