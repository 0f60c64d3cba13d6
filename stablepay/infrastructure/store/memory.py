from __future__ import annotations

import logging
import threading
from typing import Optional

from stablepay.domain.errors import ConflictError, DuplicateIdError, NotFoundError
from stablepay.domain.models.payment_request import (
    PaymentRequest,
    RequestFilter,
    RequestStatus,
    Transaction,
    check_invariants,
    check_transition,
)
from stablepay.infrastructure.store.base import Mutator, RequestStore, TransactionFactory

log = logging.getLogger("payments.store")


class InMemoryRequestStore(RequestStore):
    """
    Словарь в памяти процесса.
    Блокировки threading.Lock: внутри нет await, поэтому безопасно
    и для asyncio-задач, и для обычных потоков.
    """

    def __init__(self) -> None:
        self._records: dict[str, PaymentRequest] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._transactions: list[Transaction] = []
        self._transaction_ids: set[str] = set()
        # защищает только структуру словарей, не сами записи
        self._registry_lock = threading.Lock()

    async def insert(self, request: PaymentRequest) -> None:
        check_invariants(request)
        with self._registry_lock:
            if request.id in self._records:
                raise DuplicateIdError(f"request id {request.id} already exists", request_id=request.id)
            self._records[request.id] = request
            self._locks[request.id] = threading.Lock()

    async def get(self, request_id: str) -> PaymentRequest:
        record = self._records.get(request_id)
        if record is None:
            raise NotFoundError(f"payment request {request_id} not found", request_id=request_id)
        return record

    async def compare_and_transition(
        self,
        request_id: str,
        expected: RequestStatus,
        mutator: Mutator,
        *,
        transaction: Optional[TransactionFactory] = None,
    ) -> PaymentRequest:
        lock = self._locks.get(request_id)
        if lock is None:
            raise NotFoundError(f"payment request {request_id} not found", request_id=request_id)
        with lock:
            current = self._records[request_id]
            if current.status is not expected:
                raise ConflictError(
                    f"payment request {request_id} is {current.status.value}, expected {expected.value}",
                    request_id=request_id,
                    current_status=current.status,
                )
            updated = mutator(current)
            check_transition(current, updated)
            if transaction is not None:
                # под блокировкой записи: история и статус меняются вместе
                self._append_transaction(transaction(updated))
            self._records[request_id] = updated
        log.debug("transition id=%s %s -> %s", request_id, current.status.value, updated.status.value)
        return updated

    async def list(self, flt: Optional[RequestFilter] = None) -> list[PaymentRequest]:
        flt = flt or RequestFilter()
        with self._registry_lock:
            records = list(self._records.values())
        out = sorted((r for r in records if flt.matches(r)), key=lambda r: r.created_at)
        if flt.limit is not None:
            out = out[: flt.limit]
        return out

    async def record_transaction(self, tx: Transaction) -> None:
        self._append_transaction(tx)

    def _append_transaction(self, tx: Transaction) -> None:
        with self._registry_lock:
            if tx.id in self._transaction_ids:
                raise DuplicateIdError(f"transaction id {tx.id} already exists", request_id=tx.request_id)
            self._transactions.append(tx)
            self._transaction_ids.add(tx.id)

    async def list_transactions(
        self,
        *,
        merchant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        with self._registry_lock:
            txs = list(self._transactions)
        out = [t for t in reversed(txs) if merchant_id is None or t.merchant_id == merchant_id]
        if limit is not None:
            out = out[:limit]
        return out
