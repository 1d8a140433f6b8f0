"""
SQL store tests against an in-memory SQLite engine (StaticPool).
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from pg_billing.core.errors import ConflictError, NotFoundError
from pg_billing.features.billing.retry_policy import PERMANENT_DECLINE_CODES
from pg_billing.features.billing.sql_stores import (
    SqlBillingAttemptStore,
    SqlCardStore,
    SqlJobRunStore,
    SqlPlanStore,
    SqlSubscriptionStore,
    SqlTransactionStore,
)
from pg_billing.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    Card,
    Plan,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionType,
)

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, autocommit=False, autoflush=False)


@pytest.fixture
def sql(session_factory):
    return {
        "plans": SqlPlanStore(session_factory),
        "cards": SqlCardStore(session_factory),
        "subscriptions": SqlSubscriptionStore(session_factory),
        "attempts": SqlBillingAttemptStore(session_factory),
        "transactions": SqlTransactionStore(session_factory),
        "job_runs": SqlJobRunStore(session_factory),
    }


@pytest.fixture
def sql_card(sql):
    return sql["cards"].create(Card(id=0, user_id="user_1", gateway_token="tok_visa", last_four="4242"))


def _subscription(sql, card, **overrides):
    values = dict(
        user_id="user_1",
        card_id=card.id,
        plan_name="Pro Monthly",
        amount=Decimal("1000.00"),
        currency="LKR",
        status=SubscriptionStatus.active,
        interval="month",
        next_billing_at=NOW - timedelta(minutes=1),
        created_at=NOW - timedelta(days=31),
    )
    values.update(overrides)
    return sql["subscriptions"].create(Subscription(**values))


def _attempt(sql, subscription, **overrides):
    values = dict(
        subscription_id=subscription.id,
        amount=subscription.amount,
        currency=subscription.currency,
        status=BillingAttemptStatus.failed,
        attempt_number=1,
        billing_period_start=subscription.next_billing_at,
        scheduled_at=NOW - timedelta(hours=30),
        processed_at=NOW - timedelta(hours=30),
        created_at=NOW - timedelta(hours=30),
    )
    values.update(overrides)
    return sql["attempts"].create(BillingAttempt(**values))


def test_plan_and_card_round_trip(sql):
    plan = sql["plans"].create(Plan(id=0, name="Pro", amount=Decimal("1000.00"), currency="LKR", interval="month"))
    card = sql["cards"].create(Card(id=0, user_id="user_1", gateway_token="tok", expiry_month=12, expiry_year=2030))

    assert sql["plans"].get_by_id(plan.id).amount == Decimal("1000.00")
    assert sql["cards"].get_by_id(card.id).expiry_year == 2030
    with pytest.raises(NotFoundError):
        sql["plans"].get_by_id(999)
    with pytest.raises(NotFoundError):
        sql["cards"].get_by_id(999)


def test_subscription_round_trip_keeps_utc(sql, sql_card):
    sub = _subscription(sql, sql_card, metadata={"source": "app"}, trial_end=NOW - timedelta(days=1))

    loaded = sql["subscriptions"].get_by_id(sub.id)

    assert loaded.next_billing_at == sub.next_billing_at
    assert loaded.next_billing_at.tzinfo is not None
    assert loaded.trial_end == NOW - timedelta(days=1)
    assert loaded.metadata == {"source": "app"}
    assert loaded.amount == Decimal("1000.00")
    assert loaded.version == 0


def test_subscription_update_is_compare_and_set(sql, sql_card):
    sub = _subscription(sql, sql_card)

    updated = sql["subscriptions"].update(sub.model_copy(update={"status": SubscriptionStatus.past_due}))
    assert updated.version == 1
    assert sql["subscriptions"].get_by_id(sub.id).status == SubscriptionStatus.past_due

    with pytest.raises(ConflictError):
        sql["subscriptions"].update(sub.model_copy(update={"status": SubscriptionStatus.active}))
    with pytest.raises(NotFoundError):
        sql["subscriptions"].update(sub.model_copy(update={"id": 999}))


def test_cancel(sql, sql_card):
    sub = _subscription(sql, sql_card)

    flagged = sql["subscriptions"].cancel(sub.id, True, NOW)
    assert flagged.cancel_at_period_end is True
    assert flagged.status == SubscriptionStatus.active

    canceled = sql["subscriptions"].cancel(sub.id, False, NOW)
    loaded = sql["subscriptions"].get_by_id(sub.id)
    assert canceled.status == loaded.status == SubscriptionStatus.canceled
    assert loaded.canceled_at == NOW


def test_get_by_user_and_count_active(sql, sql_card):
    a = _subscription(sql, sql_card)
    b = _subscription(sql, sql_card, status=SubscriptionStatus.past_due, created_at=NOW)
    _subscription(sql, sql_card, user_id="user_2")

    assert [s.id for s in sql["subscriptions"].get_by_user("user_1")] == [b.id, a.id]
    assert [s.id for s in sql["subscriptions"].get_by_user("user_1", "past_due")] == [b.id]
    assert sql["subscriptions"].count_active() == 2


def test_get_due_for_billing(sql, sql_card):
    old = _subscription(sql, sql_card, next_billing_at=NOW - timedelta(days=2))
    recent = _subscription(sql, sql_card)
    trial_over = _subscription(
        sql, sql_card, status=SubscriptionStatus.trialing, trial_end=NOW - timedelta(hours=1),
        next_billing_at=NOW - timedelta(hours=1),
    )
    _subscription(sql, sql_card, next_billing_at=NOW + timedelta(hours=1))
    _subscription(sql, sql_card, cancel_at_period_end=True)
    _subscription(sql, sql_card, status=SubscriptionStatus.past_due)
    _subscription(sql, sql_card, status=SubscriptionStatus.trialing, trial_end=NOW + timedelta(days=1))

    due = sql["subscriptions"].get_due_for_billing(NOW + timedelta(minutes=5), NOW, 100)

    assert [s.id for s in due] == [old.id, trial_over.id, recent.id]
    assert len(sql["subscriptions"].get_due_for_billing(NOW + timedelta(minutes=5), NOW, 1)) == 1


def test_claim_for_billing_only_once(sql, sql_card):
    sub = _subscription(sql, sql_card)

    first = sql["subscriptions"].claim_for_billing(sub)
    second = sql["subscriptions"].claim_for_billing(sub)

    assert first is not None and first.version == 1
    assert second is None


def test_pending_attempts_and_claim(sql, sql_card):
    sub = _subscription(sql, sql_card)
    late = _attempt(sql, sub, status=BillingAttemptStatus.pending, scheduled_at=NOW - timedelta(minutes=1), processed_at=None)
    early = _attempt(sql, sub, status=BillingAttemptStatus.requires_action, scheduled_at=NOW - timedelta(hours=1), processed_at=None)
    _attempt(sql, sub, status=BillingAttemptStatus.pending, scheduled_at=NOW + timedelta(hours=1), processed_at=None)

    pending = sql["attempts"].get_pending(NOW, 50)
    assert [a.id for a in pending] == [early.id, late.id]

    claimed = sql["attempts"].claim(late, NOW)
    assert claimed.status == BillingAttemptStatus.processing
    assert claimed.processed_at == NOW
    assert sql["attempts"].claim(late, NOW) is None
    assert sql["attempts"].get_by_id(late.id).status == BillingAttemptStatus.processing


def test_attempt_update_and_history(sql, sql_card):
    sub = _subscription(sql, sql_card)
    first = _attempt(sql, sub)
    second = _attempt(sql, sub, attempt_number=2, status=BillingAttemptStatus.pending)

    updated = sql["attempts"].update(second.model_copy(update={"status": BillingAttemptStatus.succeeded, "gateway_transaction_id": "txn-9"}))
    assert updated.version == 1
    with pytest.raises(ConflictError):
        sql["attempts"].update(second)

    history = sql["attempts"].get_by_subscription(sub.id)
    assert [a.id for a in history] == [second.id, first.id]
    assert history[0].gateway_transaction_id == "txn-9"


def test_failed_for_retry_takes_latest_attempt_only(sql, sql_card):
    retried = _subscription(sql, sql_card)
    _attempt(sql, retried)
    _attempt(sql, retried, status=BillingAttemptStatus.pending, attempt_number=2, processed_at=None)

    waiting = _subscription(sql, sql_card)
    candidate = _attempt(sql, waiting, error_code="DECLINED")

    found = sql["attempts"].get_failed_for_retry(3, NOW - timedelta(hours=24), PERMANENT_DECLINE_CODES, 50)
    assert [a.id for a in found] == [candidate.id]


def test_failed_for_retry_filters(sql, sql_card):
    null_code = _attempt(sql, _subscription(sql, sql_card))
    _attempt(sql, _subscription(sql, sql_card), error_code="Card_Declined")
    _attempt(sql, _subscription(sql, sql_card), attempt_number=3)
    _attempt(sql, _subscription(sql, sql_card), processed_at=NOW - timedelta(hours=2))

    found = sql["attempts"].get_failed_for_retry(3, NOW - timedelta(hours=24), PERMANENT_DECLINE_CODES, 50)
    assert [a.id for a in found] == [null_code.id]


def test_exhausted(sql, sql_card):
    maxed = _attempt(sql, _subscription(sql, sql_card), attempt_number=3)
    permanent = _attempt(sql, _subscription(sql, sql_card), error_code="insufficient_funds",
                         processed_at=NOW - timedelta(hours=29))
    _attempt(sql, _subscription(sql, sql_card), error_code="DECLINED")

    found = sql["attempts"].get_exhausted(3, NOW - timedelta(hours=24), PERMANENT_DECLINE_CODES, 50)
    assert [a.id for a in found] == [maxed.id, permanent.id]


def test_succeeded_without_transaction_and_duplicate_transaction(sql, sql_card):
    sub = _subscription(sql, sql_card)
    recorded = _attempt(sql, sub, status=BillingAttemptStatus.succeeded)
    missing = _attempt(sql, sub, status=BillingAttemptStatus.succeeded)
    txn = Transaction(
        user_id="user_1", card_id=sql_card.id, subscription_id=sub.id, billing_attempt_id=recorded.id,
        invoice_id="INV-1", amount=Decimal("1000.00"), currency="LKR", status="CAPTURED",
        gateway_transaction_id="txn-1", type=TransactionType.recurring, created_at=NOW,
    )
    sql["transactions"].create(txn)

    assert [a.id for a in sql["attempts"].get_succeeded_without_transaction(50)] == [missing.id]
    assert sql["transactions"].get_by_attempt(recorded.id).invoice_id == "INV-1"
    assert sql["transactions"].get_by_attempt(missing.id) is None
    assert len(sql["transactions"].get_by_user("user_1")) == 1
    with pytest.raises(ConflictError):
        sql["transactions"].create(txn)


def test_succeeded_unsettled_matches_current_boundary(sql, sql_card):
    sub = _subscription(sql, sql_card)
    unsettled = _attempt(sql, sub, status=BillingAttemptStatus.succeeded)
    _attempt(sql, sub, status=BillingAttemptStatus.failed)
    _attempt(sql, sub, status=BillingAttemptStatus.succeeded, billing_period_start=sub.next_billing_at - timedelta(days=31))
    _attempt(sql, sub, status=BillingAttemptStatus.succeeded, billing_period_start=None)

    assert [a.id for a in sql["attempts"].get_succeeded_unsettled(50)] == [unsettled.id]

    moved = sql["subscriptions"].update(sub.model_copy(update={"next_billing_at": NOW + timedelta(days=30)}))
    assert moved.next_billing_at == NOW + timedelta(days=30)
    assert sql["attempts"].get_succeeded_unsettled(50) == []


def test_stuck_processing(sql, sql_card):
    sub = _subscription(sql, sql_card)
    stuck = _attempt(sql, sub, status=BillingAttemptStatus.processing, processed_at=NOW - timedelta(hours=2))
    _attempt(sql, sub, status=BillingAttemptStatus.processing, processed_at=NOW - timedelta(minutes=5))

    found = sql["attempts"].get_stuck_processing(NOW - timedelta(minutes=30), 50)
    assert [a.id for a in found] == [stuck.id]


def test_job_runs(sql):
    sql["job_runs"].record("billing.reconcile", NOW, NOW + timedelta(seconds=1), "success", {"issues_found": 2})

    latest = sql["job_runs"].latest("billing.reconcile")
    assert latest["status"] == "success"
    assert latest["stats"] == {"issues_found": 2}
    assert latest["started_at"] == NOW
    assert sql["job_runs"].latest("other") is None
