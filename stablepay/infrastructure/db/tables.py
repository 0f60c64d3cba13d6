from __future__ import annotations

from datetime import datetime

from sqlalchemy import TIMESTAMP, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stablepay.infrastructure.db.base import Base


class PaymentRequestRow(Base):
    """
    Запрос на оплату. Сумма хранится строкой, чтобы Decimal не терял точность
    (SQLite не умеет Numeric без потерь).
    """
    __tablename__ = "payment_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="single")
    label: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_payment_requests_status_expires_at", "status", "expires_at"),
        Index("ix_payment_requests_merchant_id", "merchant_id"),
    )

    def __repr__(self) -> str:  # для удобной отладки
        return f"<PaymentRequestRow id={self.id} status={self.status}>"


class TransactionRow(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    merchant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    amount: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    payer_ref: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
