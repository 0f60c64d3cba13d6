from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

from stablepay.domain.models.payment_request import (
    PaymentRequest,
    RequestFilter,
    RequestStatus,
    Transaction,
)

Mutator = Callable[[PaymentRequest], PaymentRequest]
TransactionFactory = Callable[[PaymentRequest], Transaction]


class RequestStore(ABC):
    """
    Хранилище запросов на оплату.

    Единственный способ изменить запись: compare_and_transition():
    mutator применяется, только если текущий статус равен expected,
    иначе ConflictError, а запись остаётся нетронутой.
    Если передан transaction, транзакция оплаты строится из обновлённой
    записи и сохраняется в том же атомарном шаге, что и смена статуса.
    """

    @abstractmethod
    async def insert(self, request: PaymentRequest) -> None:
        """DuplicateIdError, если id уже занят."""

    @abstractmethod
    async def get(self, request_id: str) -> PaymentRequest:
        """NotFoundError для неизвестного id."""

    @abstractmethod
    async def compare_and_transition(
        self,
        request_id: str,
        expected: RequestStatus,
        mutator: Mutator,
        *,
        transaction: Optional[TransactionFactory] = None,
    ) -> PaymentRequest:
        ...

    @abstractmethod
    async def list(self, flt: Optional[RequestFilter] = None) -> list[PaymentRequest]:
        ...

    @abstractmethod
    async def record_transaction(self, tx: Transaction) -> None:
        ...

    @abstractmethod
    async def list_transactions(
        self,
        *,
        merchant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Newest first."""
