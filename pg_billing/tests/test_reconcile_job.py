"""
Reconcile job tests: missing transactions are written back, paid cycles are
settled, stuck attempts are reported, and every run is recorded.
"""
from datetime import timedelta
from decimal import Decimal

from pg_billing.core.config import BillingConfig
from pg_billing.features.billing.reconcile_job import JOB_NAME, run_reconcile_job
from pg_billing.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    Subscription,
    SubscriptionStatus,
    TransactionType,
)


def _subscription(stores, card, clock):
    return stores["subscriptions"].create(Subscription(
        user_id="user_1", card_id=card.id, plan_name="Pro Monthly", amount=Decimal("1000.00"),
        currency="LKR", status=SubscriptionStatus.active, interval="month",
        next_billing_at=clock.now + timedelta(days=20), created_at=clock.now - timedelta(days=40),
    ))


def _attempt(stores, subscription, clock, status, processed_at=None):
    return stores["attempts"].create(BillingAttempt(
        subscription_id=subscription.id, amount=subscription.amount, currency=subscription.currency,
        status=status, attempt_number=1, scheduled_at=clock.now - timedelta(hours=3),
        processed_at=processed_at or clock.now - timedelta(hours=3),
        gateway_transaction_id="txn-77" if status == BillingAttemptStatus.succeeded else None,
        created_at=clock.now - timedelta(hours=3),
    ))


def _run(stores, clock, **kwargs):
    return run_reconcile_job(
        stores["subscriptions"], stores["attempts"], stores["transactions"],
        now=clock.now, config=BillingConfig(), job_runs=stores["job_runs"], **kwargs,
    )


def test_missing_transaction_is_written(stores, card, clock):
    sub = _subscription(stores, card, clock)
    attempt = _attempt(stores, sub, clock, BillingAttemptStatus.succeeded)

    result = _run(stores, clock)

    assert result["issues_found"] == 1
    assert result["corrections_applied"] == 1
    assert result["issues"] == [{"type": "missing_transaction", "attempt_id": attempt.id, "subscription_id": sub.id}]
    transaction = stores["transactions"].get_by_attempt(attempt.id)
    assert transaction.status == "CAPTURED"
    assert transaction.gateway_transaction_id == "txn-77"
    assert transaction.type == TransactionType.recurring
    assert transaction.amount == Decimal("1000.00")

    # Second pass finds nothing
    assert _run(stores, clock)["issues_found"] == 0


def test_report_only_changes_nothing(stores, card, clock):
    sub = _subscription(stores, card, clock)
    _attempt(stores, sub, clock, BillingAttemptStatus.succeeded)

    result = _run(stores, clock, fix=False)

    assert result["issues_found"] == 1
    assert result["corrections_applied"] == 0
    assert stores["transactions"].all() == []


def test_stuck_processing_reported(stores, card, clock):
    sub = _subscription(stores, card, clock)
    stuck = _attempt(stores, sub, clock, BillingAttemptStatus.processing)
    _attempt(stores, sub, clock, BillingAttemptStatus.processing, processed_at=clock.now - timedelta(minutes=5))

    result = _run(stores, clock)

    assert result["stuck_processing"] == 1
    [issue] = result["issues"]
    assert issue["type"] == "stuck_processing"
    assert issue["attempt_id"] == stuck.id
    # Reported, not changed
    assert stores["attempts"].get_by_id(stuck.id).status == BillingAttemptStatus.processing


def test_run_is_recorded(stores, clock):
    result = _run(stores, clock)

    run = stores["job_runs"].latest(JOB_NAME)
    assert run["status"] == "success"
    assert run["stats"] == {
        "issues_found": 0, "corrections_applied": 0, "unsettled_cycles": 0, "stuck_processing": 0,
    }
    assert result["timestamp"] == clock.now.isoformat()


def test_charge_with_failed_transaction_write_is_repaired(services, stores, card, clock):
    stores["transactions"].fail_writes = True
    sub = stores["subscriptions"].create(Subscription(
        user_id="user_1", card_id=card.id, plan_name="Pro Monthly", amount=Decimal("1000.00"),
        currency="LKR", status=SubscriptionStatus.active, interval="month",
        next_billing_at=clock.now - timedelta(minutes=1), created_at=clock.now - timedelta(days=31),
    ))
    services.subscription_service.process_due_subscriptions(100)
    stores["transactions"].fail_writes = False

    result = _run(stores, clock)

    assert result["corrections_applied"] == 1
    [transaction] = stores["transactions"].all()
    assert transaction.subscription_id == sub.id


def test_paid_but_unsettled_cycle_is_settled(stores, card, clock):
    boundary = clock.now - timedelta(hours=2)
    sub = stores["subscriptions"].create(Subscription(
        user_id="user_1", card_id=card.id, plan_name="Pro Monthly", amount=Decimal("1000.00"),
        currency="LKR", status=SubscriptionStatus.past_due, interval="month",
        billing_cycle_anchor=boundary, next_billing_at=boundary, created_at=clock.now - timedelta(days=40),
    ))
    paid = stores["attempts"].create(BillingAttempt(
        subscription_id=sub.id, amount=sub.amount, currency=sub.currency,
        status=BillingAttemptStatus.succeeded, attempt_number=2, billing_period_start=boundary,
        scheduled_at=boundary, processed_at=boundary, created_at=boundary,
    ))

    report = _run(stores, clock, fix=False)
    assert [i["type"] for i in report["issues"]] == ["missing_transaction", "unsettled_cycle"]
    assert stores["subscriptions"].get_by_id(sub.id).next_billing_at == boundary

    result = _run(stores, clock)

    assert result["unsettled_cycles"] == 1
    assert result["corrections_applied"] == 2
    settled = stores["subscriptions"].get_by_id(sub.id)
    assert settled.status == SubscriptionStatus.active
    assert settled.current_period_start == boundary
    assert settled.next_billing_at == boundary.replace(month=boundary.month + 1)
    assert stores["transactions"].get_by_attempt(paid.id) is not None

    # Settled cycles are not found again
    assert _run(stores, clock)["issues_found"] == 0
