"""
Billing reconciliation job.

The charge, the attempt update, the subscription update and the transaction
insert are separate writes. This pass is the compensating step: it writes the
missing Transaction for every succeeded attempt that lacks one, settles cycles
that were paid but whose period never advanced, and reports attempts stuck
in `processing` (a worker died between claim and result).
Runs at the end of every scheduler cycle and from the admin endpoint.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pg_billing.core.config import BillingConfig
from pg_billing.core.errors import ConflictError, NotFoundError
from pg_billing.features.billing.charging import generate_invoice_id
from pg_billing.features.billing.stores import (
    BillingAttemptStore,
    JobRunStore,
    SubscriptionStore,
    TransactionStore,
)
from pg_billing.features.billing.subscription_service import settle_billing_cycle
from pg_billing.models.billing import Transaction, TransactionType

logger = logging.getLogger("pg_billing.billing.reconcile")

JOB_NAME = "billing.reconcile"
RECONCILED_TRANSACTION_STATUS = "CAPTURED"


def run_reconcile_job(
    subscriptions: SubscriptionStore,
    attempts: BillingAttemptStore,
    transactions: TransactionStore,
    now: Optional[datetime] = None,
    fix: bool = True,
    limit: int = 100,
    config: Optional[BillingConfig] = None,
    job_runs: Optional[JobRunStore] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    cfg = config or BillingConfig()
    issues = []
    corrections = 0

    for attempt in attempts.get_succeeded_without_transaction(limit):
        issues.append({
            "type": "missing_transaction",
            "attempt_id": attempt.id,
            "subscription_id": attempt.subscription_id,
        })
        if not fix:
            continue
        try:
            subscription = subscriptions.get_by_id(attempt.subscription_id)
        except NotFoundError:
            logger.warning(f"[reconcile] subscription {attempt.subscription_id} missing for attempt {attempt.id}")
            continue
        try:
            transactions.create(Transaction(
                user_id=subscription.user_id,
                card_id=subscription.card_id,
                subscription_id=subscription.id,
                billing_attempt_id=attempt.id,
                invoice_id=generate_invoice_id(now),
                amount=attempt.amount,
                currency=attempt.currency,
                status=RECONCILED_TRANSACTION_STATUS,
                gateway_transaction_id=attempt.gateway_transaction_id,
                type=TransactionType.recurring,
                created_at=now,
            ))
        except ConflictError:
            # Written by someone else since the scan
            continue
        corrections += 1
        logger.info(
            f"[reconcile] recorded missing transaction for attempt {attempt.id}",
            extra={"subscription_id": subscription.id, "attempt_id": attempt.id},
        )

    unsettled = 0
    for attempt in attempts.get_succeeded_unsettled(limit):
        issues.append({
            "type": "unsettled_cycle",
            "attempt_id": attempt.id,
            "subscription_id": attempt.subscription_id,
            "billing_period_start": attempt.billing_period_start.isoformat(),
        })
        unsettled += 1
        if not fix:
            continue
        try:
            subscription = subscriptions.get_by_id(attempt.subscription_id)
            settle_billing_cycle(subscriptions, subscription, attempt.billing_period_start)
        except (NotFoundError, ConflictError) as e:
            logger.warning(f"[reconcile] could not settle cycle paid by attempt {attempt.id}: {e}")
            continue
        corrections += 1
        logger.info(
            f"[reconcile] settled cycle {attempt.billing_period_start.isoformat()} paid by attempt {attempt.id}",
            extra={"subscription_id": attempt.subscription_id, "attempt_id": attempt.id},
        )

    stuck = attempts.get_stuck_processing(now - cfg.stuck_processing_after, limit)
    for attempt in stuck:
        issues.append({
            "type": "stuck_processing",
            "attempt_id": attempt.id,
            "subscription_id": attempt.subscription_id,
            "processed_at": attempt.processed_at.isoformat() if attempt.processed_at else None,
        })
        logger.warning(
            f"[reconcile] attempt {attempt.id} stuck in processing since {attempt.processed_at}",
            extra={"subscription_id": attempt.subscription_id, "attempt_id": attempt.id},
        )

    stats = {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "unsettled_cycles": unsettled,
        "stuck_processing": len(stuck),
    }
    if job_runs is not None:
        job_runs.record(JOB_NAME, now, datetime.now(timezone.utc), "success", stats)

    return {
        **stats,
        "issues": issues,
        "timestamp": now.isoformat(),
    }
