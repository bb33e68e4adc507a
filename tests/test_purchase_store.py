# tests/test_purchase_store.py
from datetime import timedelta

import pytest

from database import Database
from errors import DuplicateOrder
from schemas.payment_definitions import (
    TERMINAL_STATUSES,
    BusinessStatus,
    Purchase,
    ReconcileLock,
    parse_status,
    serialize_status,
)
from storage.purchase_store import PostgresPurchaseStore, PurchaseChanges, UpdateGuard

pytestmark = pytest.mark.anyio


def make_purchase(order_id="order-1", status="initiated", payment_id=None, created_at=None, user_id="user-1"):
    return Purchase(
        order_id=order_id,
        user_id=user_id,
        course_id="course-1",
        amount=1900,
        amount_minor_units=190000,
        payment_id=payment_id,
        status=BusinessStatus(value=status),
        created_at=created_at,
    )


# =============================================================================
# STATUS UNION
# =============================================================================

def test_lock_token_round_trip():
    lock = ReconcileLock.claim("new", 1700000000000)
    raw = lock.serialize()

    assert raw.startswith("reconciling:1700000000000:")
    assert raw.endswith(":new")
    assert parse_status(raw) == lock
    assert parse_status(raw).business_value == "new"


def test_previous_status_may_contain_colons():
    lock = parse_status("reconciling:5:abc:weird:status")
    assert isinstance(lock, ReconcileLock)
    assert lock.previous_status == "weird:status"


def test_malformed_lock_is_a_business_status():
    status = parse_status("reconciling:soon:abc:new")
    assert status == BusinessStatus(value="reconciling:soon:abc:new")


def test_business_status_keeps_persisted_text():
    status = parse_status("CONFIRMED")
    assert status == BusinessStatus(value="CONFIRMED")
    assert serialize_status(status) == "CONFIRMED"
    assert status.is_paid and status.is_terminal
    assert parse_status(None) == BusinessStatus(value="")


def test_new_statuses_are_written_lower_case():
    assert serialize_status("  AUTHORIZED ") == "authorized"


def test_lock_expiry():
    lock = ReconcileLock(claimed_at_ms=1000, nonce="n", previous_status="new")
    assert not lock.is_expired(1000 + 119_999, 120_000)
    assert lock.is_expired(1000 + 120_000, 120_000)


# =============================================================================
# PRIMITIVES
# =============================================================================

async def test_insert_and_lookups(store):
    stored = await store.insert(make_purchase())

    assert stored.id
    assert stored.created_at is not None
    assert (await store.get(stored.id)).order_id == "order-1"
    assert (await store.get_by_order_id("order-1")).id == stored.id
    assert (await store.get_for_user("user-1", "order-1")).id == stored.id
    assert await store.get_for_user("someone-else", "order-1") is None


async def test_duplicate_order_id(store):
    await store.insert(make_purchase())
    with pytest.raises(DuplicateOrder):
        await store.insert(make_purchase())


async def test_conditional_update_respects_guard(store):
    stored = await store.insert(make_purchase(status="new"))

    assert await store.conditional_update(
        stored.id, PurchaseChanges(status="authorized"), UpdateGuard(status_equals="confirmed")
    ) == 0
    assert await store.conditional_update(
        stored.id, PurchaseChanges(status="authorized"), UpdateGuard(status_in=frozenset({"new"}))
    ) == 1
    assert (await store.get(stored.id)).status == BusinessStatus(value="authorized")


async def test_payment_id_is_set_at_most_once(store):
    stored = await store.insert(make_purchase())

    await store.conditional_update(stored.id, PurchaseChanges(payment_id="p-1"), UpdateGuard())
    await store.conditional_update(stored.id, PurchaseChanges(payment_id="p-2"), UpdateGuard())

    assert (await store.get(stored.id)).payment_id == "p-1"


async def test_only_one_claim_wins(store):
    stored = await store.insert(make_purchase(status="new", payment_id="p-1"))
    first = ReconcileLock.claim("new", 1)
    second = ReconcileLock.claim("new", 2)

    won = await store.conditional_update(stored.id, PurchaseChanges(status=first), UpdateGuard(status_equals="new"))
    lost = await store.conditional_update(stored.id, PurchaseChanges(status=second), UpdateGuard(status_equals="new"))

    assert (won, lost) == (1, 0)
    assert (await store.get(stored.id)).status == first


# =============================================================================
# apply_provider_status
# =============================================================================

async def test_paid_at_is_set_once(store, now):
    stored = await store.insert(make_purchase(status="new"))

    first = await store.apply_provider_status(stored.id, "CONFIRMED", payment_id="p-1", now=now)
    second = await store.apply_provider_status(stored.id, "CONFIRMED", payment_id="p-2", now=now + timedelta(hours=1))

    assert first.paid_at == now
    assert second.paid_at == now
    assert second.payment_id == "p-1"
    assert second.status == BusinessStatus(value="confirmed")


async def test_backfills_paid_at_on_paid_status_row(store, now):
    stored = await store.insert(make_purchase(status="confirmed"))

    updated = await store.apply_provider_status(stored.id, "confirmed", now=now)

    assert updated.paid_at == now


async def test_terminal_status_is_never_downgraded(store, now):
    stored = await store.insert(make_purchase(status="new"))
    await store.apply_provider_status(stored.id, "CONFIRMED", now=now)

    for late in ("AUTHORIZED", "NEW", "REJECTED"):
        updated = await store.apply_provider_status(stored.id, late, now=now)
        assert updated.status == BusinessStatus(value="confirmed")


async def test_failed_row_is_not_marked_paid(store, now):
    stored = await store.insert(make_purchase(status="rejected"))

    updated = await store.apply_provider_status(stored.id, "CONFIRMED", now=now)

    assert updated.paid_at is None
    assert updated.status == BusinessStatus(value="rejected")


async def test_non_terminal_progress_is_recorded(store):
    stored = await store.insert(make_purchase(status="created"))

    updated = await store.apply_provider_status(stored.id, "FORM_SHOWED", payment_id="p-9")

    assert updated.status == BusinessStatus(value="form_showed")
    assert updated.payment_id == "p-9"


async def test_empty_status_changes_nothing(store):
    stored = await store.insert(make_purchase(status="new"))

    updated = await store.apply_provider_status(stored.id, "")

    assert updated.status == BusinessStatus(value="new")


async def test_lock_guard_blocks_stale_holder(store, now):
    stored = await store.insert(make_purchase(status="new", payment_id="p-1"))
    stale = ReconcileLock.claim("new", 1)
    current = ReconcileLock.claim("new", 2)
    await store.conditional_update(stored.id, PurchaseChanges(status=current), UpdateGuard())

    untouched = await store.apply_provider_status(stored.id, "CONFIRMED", lock=stale, now=now)
    assert untouched.paid_at is None
    assert untouched.status == current

    applied = await store.apply_provider_status(stored.id, "CONFIRMED", lock=current, now=now)
    assert applied.paid_at == now
    assert applied.status == BusinessStatus(value="confirmed")


# =============================================================================
# QUERIES
# =============================================================================

async def test_reconcile_candidates(store, now):
    recent = await store.insert(make_purchase("recent", "new", "p-1", now - timedelta(hours=1)))
    older = await store.insert(make_purchase("older", "authorized", "p-2", now - timedelta(days=3)))
    await store.insert(make_purchase("too-old", "new", "p-3", now - timedelta(days=10)))
    await store.insert(make_purchase("no-payment", "initiated", None, now))
    await store.insert(make_purchase("done", "confirmed", "p-4", now))
    locked = await store.insert(make_purchase("locked", "new", "p-5", now - timedelta(hours=2)))
    await store.conditional_update(locked.id, PurchaseChanges(status=ReconcileLock.claim("new", 1)), UpdateGuard())

    candidates = await store.list_reconcile_candidates("tbank", now - timedelta(hours=168), 10)

    assert [p.id for p in candidates] == [recent.id, locked.id, older.id]
    assert all(serialize_status(p.status) not in TERMINAL_STATUSES for p in candidates)

    capped = await store.list_reconcile_candidates("tbank", now - timedelta(hours=168), 1)
    assert [p.id for p in capped] == [recent.id]


async def test_list_paid_for_user(store, now):
    paid = await store.insert(make_purchase("a", "new"))
    await store.apply_provider_status(paid.id, "confirmed", now=now)
    await store.insert(make_purchase("b", "new"))
    await store.insert(make_purchase("c", "confirmed", user_id="user-2"))

    rows = await store.list_paid_for_user("user-1")

    assert [p.order_id for p in rows] == ["a"]


# =============================================================================
# POSTGRES UPDATE STATEMENT
# =============================================================================

@pytest.fixture
def executed(monkeypatch):
    calls = []

    async def execute(query, *args):
        calls.append((" ".join(query.split()), args))
        return "UPDATE 1"

    monkeypatch.setattr(Database, "execute", execute)
    return calls


async def test_postgres_lock_guarded_update(executed, now):
    lock = ReconcileLock(claimed_at_ms=1700000000000, nonce="abc", previous_status="NEW")

    changed = await PostgresPurchaseStore().conditional_update(
        "purchase-1",
        PurchaseChanges(status="CONFIRMED", payment_id="1001", paid_at=now),
        UpdateGuard(
            status_equals=lock.serialize(),
            status_not_in=frozenset({"paid", "failed"}),
            paid_at_is_null=True,
        ),
    )

    assert changed == 1
    query, args = executed[0]
    assert query == (
        "UPDATE course_purchases "
        "SET updated_at = NOW(), status = $2, "
        "payment_id = COALESCE(payment_id, $3), paid_at = COALESCE(paid_at, $4) "
        "WHERE id = $1 AND status = $5 AND lower(status) <> ALL($6::text[]) AND paid_at IS NULL"
    )
    assert args == (
        "purchase-1",
        "confirmed",
        "1001",
        now,
        "reconciling:1700000000000:abc:NEW",
        ["failed", "paid"],
    )


async def test_postgres_release_writes_persisted_text(executed):
    lock = ReconcileLock(claimed_at_ms=5, nonce="abc", previous_status="NEW")

    await PostgresPurchaseStore().conditional_update(
        "purchase-1",
        PurchaseChanges(status=BusinessStatus(value=lock.previous_status)),
        UpdateGuard(status_equals=lock.serialize()),
    )

    query, args = executed[0]
    assert query == (
        "UPDATE course_purchases SET updated_at = NOW(), status = $2 "
        "WHERE id = $1 AND status = $3"
    )
    assert args == ("purchase-1", "NEW", "reconciling:5:abc:NEW")


async def test_postgres_update_reports_rows_changed(monkeypatch):
    async def execute(query, *args):
        return "UPDATE 0"

    monkeypatch.setattr(Database, "execute", execute)
    store = PostgresPurchaseStore()

    assert await store.conditional_update("purchase-1", PurchaseChanges(status="paid"), UpdateGuard()) == 0
    assert await store.conditional_update("purchase-1", PurchaseChanges(), UpdateGuard()) == 0
