from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from stablepay.domain.errors import (
    ConflictError,
    DuplicateIdError,
    InvalidTransitionError,
    NotFoundError,
)
from stablepay.domain.models.payment_request import PaymentRequest, RequestFilter, RequestStatus, Transaction

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def make_request(request_id="REQ1", **overrides):
    data = dict(
        id=request_id,
        merchant_id="merchant-1",
        amount=Decimal("10.00"),
        currency="USDC",
        status=RequestStatus.PENDING,
        created_at=T0,
        expires_at=T0 + timedelta(minutes=15),
    )
    data.update(overrides)
    return PaymentRequest(**data)


@pytest.mark.asyncio
async def test_insert_rejects_duplicate_id(store):
    await store.insert(make_request())
    with pytest.raises(DuplicateIdError):
        await store.insert(make_request(amount=Decimal("1")))
    assert (await store.get("REQ1")).amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_get_unknown_id(store):
    with pytest.raises(NotFoundError):
        await store.get("nope")
    with pytest.raises(NotFoundError):
        await store.compare_and_transition("nope", RequestStatus.PENDING, lambda r: r)


@pytest.mark.asyncio
async def test_compare_and_transition_conflict_leaves_record_untouched(store):
    await store.insert(make_request())
    await store.compare_and_transition(
        "REQ1", RequestStatus.PENDING, lambda r: replace(r, status=RequestStatus.CANCELLED)
    )

    with pytest.raises(ConflictError) as exc_info:
        await store.compare_and_transition(
            "REQ1",
            RequestStatus.PENDING,
            lambda r: replace(r, status=RequestStatus.PAID, settled_transaction_id="TX1"),
        )

    assert exc_info.value.current_status is RequestStatus.CANCELLED
    record = await store.get("REQ1")
    assert record.status is RequestStatus.CANCELLED
    assert record.settled_transaction_id is None


@pytest.mark.asyncio
async def test_store_enforces_lifecycle_invariants(store):
    await store.insert(make_request())

    with pytest.raises(InvalidTransitionError):
        # paid без транзакции
        await store.compare_and_transition(
            "REQ1", RequestStatus.PENDING, lambda r: replace(r, status=RequestStatus.PAID)
        )
    with pytest.raises(InvalidTransitionError):
        await store.compare_and_transition(
            "REQ1",
            RequestStatus.PENDING,
            lambda r: replace(r, status=RequestStatus.EXPIRED, amount=Decimal("99")),
        )
    with pytest.raises(InvalidTransitionError):
        await store.insert(make_request("REQ2", expires_at=T0))

    assert (await store.get("REQ1")).status is RequestStatus.PENDING


@pytest.mark.asyncio
async def test_mutator_exception_propagates_without_change(store):
    await store.insert(make_request())

    def boom(_):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.compare_and_transition("REQ1", RequestStatus.PENDING, boom)
    assert (await store.get("REQ1")).status is RequestStatus.PENDING


@pytest.mark.asyncio
async def test_list_filters(store):
    await store.insert(make_request("REQ1"))
    await store.insert(make_request("REQ2", merchant_id="merchant-2", created_at=T0 + timedelta(minutes=1),
                                    expires_at=T0 + timedelta(minutes=30)))
    await store.insert(make_request("REQ3", created_at=T0 + timedelta(minutes=2),
                                    expires_at=T0 + timedelta(minutes=10)))
    await store.compare_and_transition(
        "REQ3", RequestStatus.PENDING, lambda r: replace(r, status=RequestStatus.CANCELLED)
    )

    assert [r.id for r in await store.list()] == ["REQ1", "REQ2", "REQ3"]
    assert [r.id for r in await store.list(RequestFilter(status=RequestStatus.PENDING))] == ["REQ1", "REQ2"]
    assert [r.id for r in await store.list(RequestFilter(merchant_id="merchant-2"))] == ["REQ2"]
    due = await store.list(
        RequestFilter(status=RequestStatus.PENDING, expires_at_or_before=T0 + timedelta(minutes=15))
    )
    assert [r.id for r in due] == ["REQ1"]
    assert len(await store.list(RequestFilter(limit=1))) == 1


def make_tx(tx_id, request_id="REQ1"):
    return Transaction(
        id=tx_id,
        request_id=request_id,
        merchant_id="merchant-1",
        amount=Decimal("10.00"),
        currency="USDC",
        payer_ref="payer-1",
        completed_at=T0,
    )


@pytest.mark.asyncio
async def test_transition_with_transaction_is_all_or_nothing(store):
    await store.insert(make_request("REQ1"))
    await store.insert(make_request("REQ2"))
    await store.record_transaction(make_tx("TX1", "REQ0"))

    with pytest.raises(DuplicateIdError):
        await store.compare_and_transition(
            "REQ1",
            RequestStatus.PENDING,
            lambda r: replace(r, status=RequestStatus.PAID, settled_transaction_id="TX1"),
            transaction=lambda r: make_tx(r.settled_transaction_id, r.id),
        )
    assert (await store.get("REQ1")).status is RequestStatus.PENDING

    paid = await store.compare_and_transition(
        "REQ2",
        RequestStatus.PENDING,
        lambda r: replace(r, status=RequestStatus.PAID, settled_transaction_id="TX2"),
        transaction=lambda r: make_tx(r.settled_transaction_id, r.id),
    )
    assert paid.status is RequestStatus.PAID
    assert [t.id for t in await store.list_transactions()] == ["TX2", "TX1"]
