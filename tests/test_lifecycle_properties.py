"""Property-based checks of the request / commission state machine."""
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from database import REQUESTS, TRANSACTIONS, MemoryStore
from errors import InvalidStateError, PaymentPendingError
from identity import AdminIdentity, UserIdentity
from lifecycle import (
    APPROVE,
    REQUEST_TRANSITIONS,
    TRANSACTION_TRANSITIONS,
    LifecycleEngine,
    RequestStatus,
    TransactionStatus,
    assert_transition,
    compute_commission,
)

ADMIN = AdminIdentity()
OWNER = UserIdentity(id="user-1", role="individual")
RECYCLER = UserIdentity(id="recycler-a", role="recycler")

amounts = st.decimals(min_value=0, max_value=10 ** 9, places=2, allow_nan=False, allow_infinity=False)
rates = st.integers(min_value=0, max_value=100)


def approved_request(engine, price):
    request = engine.submit(OWNER, {"productName": "Laptop", "productType": "laptop",
                                    "quantity": 1, "estimatedPrice": price})
    engine.review(ADMIN, request["id"], APPROVE)
    return request["id"]


@settings(max_examples=60, deadline=None)
@given(amount=amounts, rate=rates)
def test_commission_fixed_at_creation(amount, rate):
    store = MemoryStore()
    engine = LifecycleEngine(store, commission_rate=rate)

    tx = engine.accept(RECYCLER, approved_request(engine, amount))["transaction"]
    assert tx["orderAmount"] == amount
    assert tx["commissionRate"] == rate
    assert tx["commissionAmount"] == amount * rate / 100

    engine.pay(RECYCLER, tx["id"], "bank", "REF")
    engine.confirm(ADMIN, tx["id"], True)
    assert store.get(TRANSACTIONS, tx["id"])["commissionAmount"] == tx["commissionAmount"]


@settings(max_examples=40, deadline=None)
@given(statuses=st.lists(st.sampled_from(TransactionStatus.OUTSTANDING), min_size=1, max_size=6),
       settled=st.lists(st.sampled_from((TransactionStatus.CONFIRMED, TransactionStatus.DISPUTED)), max_size=3))
def test_outstanding_commission_always_gates(statuses, settled):
    store = MemoryStore()
    engine = LifecycleEngine(store)
    for status in statuses + settled:
        store.create(TRANSACTIONS, {"recycler": RECYCLER.id, "status": status,
                                    "commissionAmount": Decimal(1), "createdAt": None})
    request_id = approved_request(engine, Decimal(100))

    with pytest.raises(PaymentPendingError) as excinfo:
        engine.accept(RECYCLER, request_id)

    assert excinfo.value.pending_payments == len(statuses)
    assert store.get(REQUESTS, request_id)["status"] == RequestStatus.APPROVED
    assert len(store.query(TRANSACTIONS, {})) == len(statuses) + len(settled)


@settings(max_examples=30, deadline=None)
@given(count=st.integers(min_value=1, max_value=20))
def test_submissions_are_pending_with_distinct_codes(count):
    engine = LifecycleEngine(MemoryStore())
    requests = [engine.submit(OWNER, {"productName": "Phone", "productType": "phone",
                                      "quantity": 1, "estimatedPrice": 10}) for _ in range(count)]
    assert {r["status"] for r in requests} == {RequestStatus.PENDING}
    assert len({r["uniqueCode"] for r in requests}) == count


@pytest.mark.parametrize("table,states", [
    (REQUEST_TRANSITIONS, RequestStatus.ALL),
    (TRANSACTION_TRANSITIONS, TransactionStatus.ALL),
])
def test_terminal_states_have_no_exits(table, states):
    for old in states:
        for new in states:
            if new in table[old]:
                assert_transition(table, old, new)
            else:
                with pytest.raises(InvalidStateError):
                    assert_transition(table, old, new)
    for terminal in (RequestStatus.COMPLETED, RequestStatus.REJECTED,
                     TransactionStatus.CONFIRMED, TransactionStatus.DISPUTED):
        assert not table.get(terminal)


def test_accepted_is_only_entered_from_approved():
    sources = [old for old, targets in REQUEST_TRANSITIONS.items() if RequestStatus.ACCEPTED in targets]
    assert sources == [RequestStatus.APPROVED]


@given(amount=amounts, rate=rates)
def test_compute_commission_is_exact(amount, rate):
    assert compute_commission(amount, rate) * 100 == amount * rate


def test_engine_rejects_fractional_rate():
    with pytest.raises(ValueError):
        LifecycleEngine(MemoryStore(), commission_rate=8.5)
    with pytest.raises(ValueError):
        LifecycleEngine(MemoryStore(), commission_rate=101)
