"""
Subscription lifecycle and due-subscription processing.

process_due_subscriptions() is the heart of the billing cycle: it picks
subscriptions whose next_billing_at has arrived, claims each one with its
version token, charges the saved card and either advances the billing period
or moves the subscription to past_due.
"""
from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pg_billing.core.config import BillingConfig
from pg_billing.core.errors import ConflictError, NotFoundError, ValidationError
from pg_billing.features.billing.charging import (
    charge_card,
    fail_attempt,
    finish_attempt,
    record_transaction,
)
from pg_billing.features.billing.gateway import PaymentGateway
from pg_billing.features.billing.stores import (
    BillingAttemptStore,
    CardStore,
    PlanStore,
    SubscriptionStore,
    TransactionStore,
)
from pg_billing.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    BillingInterval,
    Subscription,
    SubscriptionStatus,
    TransactionType,
)

logger = logging.getLogger("pg_billing.billing.subscriptions")

SETTLE_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(value: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp, never roll over: Jan 31 + 1 month is Feb 29, not Mar 2
    day = min(anchor_day or value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_billing_date(value: datetime, interval: str, anchor: Optional[datetime] = None) -> datetime:
    """Next billing boundary after `value`.

    Months and years are calendar steps clamped to the last day of the target
    month (Jan 31 -> Feb 28). With an anchor the anchor's day of month is
    restored once the calendar allows it again (Feb 28 -> Mar 31).
    Unknown intervals bill monthly.
    """
    anchor_day = anchor.day if anchor else None
    if interval == BillingInterval.day.value:
        return value + timedelta(days=1)
    if interval == BillingInterval.week.value:
        return value + timedelta(days=7)
    if interval == BillingInterval.year.value:
        return _add_months(value, 12, anchor_day)
    if interval != BillingInterval.month.value:
        logger.warning(f"[billing] unknown billing interval {interval!r}, falling back to monthly")
    return _add_months(value, 1, anchor_day)


class SubscriptionService:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        attempts: BillingAttemptStore,
        transactions: TransactionStore,
        cards: CardStore,
        plans: PlanStore,
        gateway: PaymentGateway,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.subscriptions = subscriptions
        self.attempts = attempts
        self.transactions = transactions
        self.cards = cards
        self.plans = plans
        self.gateway = gateway
        self.config = config or BillingConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        user_id: str,
        plan_id: int,
        card_id: int,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Subscription:
        """
        Subscribe a user to a plan, paying with one of their saved cards.

        Trial plans start `trialing` and bill when the trial ends. Other plans
        start `active` with one pending attempt scheduled immediately.

        Raises:
            NotFoundError: plan or card does not exist
            ValidationError: plan inactive or card owned by someone else
            ConflictError: user already has an active subscription to the plan
        """
        plan = self.plans.get_by_id(plan_id)
        if not plan.is_active:
            raise ValidationError(f"plan {plan_id} is not active")

        card = self.cards.get_by_id(card_id)
        if card.user_id != user_id:
            raise ValidationError("card does not belong to user")

        for existing in self.subscriptions.get_by_user(user_id, SubscriptionStatus.active.value):
            if existing.plan_id == plan_id:
                raise ConflictError("user already has an active subscription to this plan")

        now = self._clock()
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            card_id=card.id,
            plan_name=plan.name,
            amount=plan.amount,
            currency=plan.currency,
            status=SubscriptionStatus.active,
            interval=plan.interval,
            metadata=metadata or {},
            next_billing_at=now,
            created_at=now,
        )

        if plan.trial_period_days > 0:
            trial_end = now + timedelta(days=plan.trial_period_days)
            subscription = subscription.model_copy(update={
                "status": SubscriptionStatus.trialing,
                "trial_start": now,
                "trial_end": trial_end,
                "next_billing_at": trial_end,
            })
            created = self.subscriptions.create(subscription)
            logger.info(f"[billing] subscription {created.id} created in trial until {trial_end.isoformat()}")
            return created

        period_end = advance_billing_date(now, plan.interval, anchor=now)
        subscription = subscription.model_copy(update={
            "current_period_start": now,
            "current_period_end": period_end,
            "billing_cycle_anchor": now,
            "next_billing_at": period_end,
        })
        created = self.subscriptions.create(subscription)

        try:
            self.attempts.create(BillingAttempt(
                subscription_id=created.id,
                amount=created.amount,
                currency=created.currency,
                status=BillingAttemptStatus.pending,
                attempt_number=1,
                scheduled_at=now,
                created_at=now,
            ))
        except Exception as e:
            logger.error(
                f"[billing] failed to create initial billing attempt for subscription {created.id}: {e}",
                extra={"subscription_id": created.id},
            )

        logger.info(f"[billing] subscription {created.id} created for user {user_id}, next billing {period_end.isoformat()}")
        return created

    def get_subscription(self, subscription_id: int) -> Subscription:
        return self.subscriptions.get_by_id(subscription_id)

    def get_user_subscriptions(self, user_id: str, status: Optional[str] = None) -> List[Subscription]:
        return self.subscriptions.get_by_user(user_id, status)

    def cancel_subscription(self, subscription_id: int, at_period_end: bool = True) -> Subscription:
        """At period end only flags the subscription; otherwise it is canceled now."""
        subscription = self.subscriptions.cancel(subscription_id, at_period_end, self._clock())
        logger.info(f"[billing] subscription {subscription_id} canceled (at_period_end={at_period_end})")
        return subscription

    def update_subscription_card(self, subscription_id: int, card_id: int) -> Subscription:
        subscription = self.subscriptions.get_by_id(subscription_id)
        card = self.cards.get_by_id(card_id)
        if card.user_id != subscription.user_id:
            raise ValidationError("card does not belong to subscription owner")
        return self.subscriptions.update(subscription.model_copy(update={"card_id": card.id}))

    # ------------------------------------------------------------------
    # Due processing
    # ------------------------------------------------------------------

    def process_due_subscriptions(
        self,
        limit: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Charge every due subscription. Returns the number charged successfully.

        Stops after `limit` successes; per-subscription failures are logged and
        skipped. Only a failure loading the batch propagates.
        """
        now = self._clock()
        cutoff = now + self.config.lookahead
        due = self.subscriptions.get_due_for_billing(cutoff, now, self.config.due_subscription_limit)

        processed = 0
        for subscription in due:
            if should_stop and should_stop():
                logger.info("[billing] stop requested, leaving due subscriptions for the next cycle")
                break
            try:
                if self.process_subscription(subscription, now):
                    processed += 1
            except Exception as e:
                logger.error(
                    f"[billing] failed to process subscription {subscription.id}: {e}",
                    extra={"subscription_id": subscription.id},
                    exc_info=True,
                )
                continue
            if limit and processed >= limit:
                break

        logger.info(f"[billing] processed {processed} of {len(due)} due subscriptions")
        return processed

    def process_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        """Run one billing cycle for a due subscription. True when the charge was approved.

        A boundary that already has an attempt is never charged again here:
        failures continue through the retry policy, and a boundary that was
        paid but not settled is only settled.
        """
        now = now or self._clock()

        history = self.attempts.get_by_subscription(subscription.id, limit=1)
        latest = history[0] if history else None
        if latest is not None and latest.billing_period_start == subscription.next_billing_at:
            if latest.status == BillingAttemptStatus.succeeded:
                # Paid but never settled
                settle_billing_cycle(self.subscriptions, subscription, latest.billing_period_start)
                logger.warning(
                    f"[billing] subscription {subscription.id} already paid by attempt {latest.id}, settled without charging",
                    extra={"subscription_id": subscription.id, "attempt_id": latest.id},
                )
                return False
            logger.info(
                f"[billing] subscription {subscription.id} cycle already attempted "
                f"(attempt {latest.id} {latest.status.value}), leaving it to retries",
                extra={"subscription_id": subscription.id, "attempt_id": latest.id},
            )
            return False

        claimed = self.subscriptions.claim_for_billing(subscription)
        if claimed is None:
            logger.info(
                f"[billing] subscription {subscription.id} claimed elsewhere, skipping",
                extra={"subscription_id": subscription.id},
            )
            return False

        attempt = self.attempts.create(BillingAttempt(
            subscription_id=claimed.id,
            amount=claimed.amount,
            currency=claimed.currency,
            status=BillingAttemptStatus.processing,
            attempt_number=1,
            billing_period_start=claimed.next_billing_at,
            scheduled_at=now,
            processed_at=now,
            created_at=now,
        ))

        try:
            if claimed.card_id is None:
                raise NotFoundError(f"subscription {claimed.id} has no card")
            card = self.cards.get_by_id(claimed.card_id)
        except NotFoundError:
            fail_attempt(self.attempts, attempt, "card not found", now)
            logger.warning(
                f"[billing] card not found for subscription {claimed.id}",
                extra={"subscription_id": claimed.id, "attempt_id": attempt.id},
            )
            return False

        outcome = charge_card(self.gateway, card, claimed.amount, claimed.currency)
        attempt = finish_attempt(self.attempts, attempt, outcome, now)

        if not outcome.approved:
            update_with_retry(self.subscriptions, claimed, _mark_past_due)
            logger.warning(
                f"[billing] charge failed for subscription {claimed.id}: {outcome.error_code or outcome.error_message}",
                extra={"subscription_id": claimed.id, "attempt_id": attempt.id, "error_code": outcome.error_code},
            )
            return False

        record_transaction(
            self.transactions,
            user_id=claimed.user_id,
            card_id=card.id,
            amount=claimed.amount,
            currency=claimed.currency,
            outcome=outcome,
            now=now,
            type=TransactionType.recurring,
            subscription_id=claimed.id,
            attempt_id=attempt.id,
        )
        settle_billing_cycle(self.subscriptions, claimed)
        logger.info(
            f"[billing] subscription {claimed.id} charged {claimed.amount} {claimed.currency}",
            extra={"subscription_id": claimed.id, "attempt_id": attempt.id},
        )
        return True


def update_with_retry(
    subscriptions: SubscriptionStore,
    subscription: Subscription,
    mutate: Callable[[Subscription], Optional[Subscription]],
    retries: int = SETTLE_RETRIES,
) -> Subscription:
    """
    Write mutate(subscription), reloading and reapplying when the version moved.

    mutate returns the changed copy, or None when the current row no longer
    needs the change; the current row is then returned untouched.

    Raises:
        ConflictError: the row changed under every one of `retries` writes
    """
    current = subscription
    for attempt in range(1, retries + 1):
        changed = mutate(current)
        if changed is None:
            return current
        try:
            return subscriptions.update(changed)
        except ConflictError:
            logger.warning(
                f"[billing] subscription {subscription.id} was modified concurrently, reloading ({attempt}/{retries})",
                extra={"subscription_id": subscription.id},
            )
            current = subscriptions.get_by_id(subscription.id)
    raise ConflictError(f"subscription {subscription.id} kept changing, gave up after {retries} writes")


def _mark_past_due(current: Subscription) -> Optional[Subscription]:
    if current.status not in (SubscriptionStatus.active, SubscriptionStatus.trialing):
        return None
    return current.model_copy(update={"status": SubscriptionStatus.past_due})


def settle_billing_cycle(
    subscriptions: SubscriptionStore,
    subscription: Subscription,
    boundary: Optional[datetime] = None,
) -> Subscription:
    """Advance the period past the boundary just paid for and restore active status.

    A row whose next_billing_at already moved past `boundary` is left alone, so
    settling the same payment twice is harmless.
    """
    boundary = boundary or subscription.next_billing_at

    def settle(current: Subscription) -> Optional[Subscription]:
        if current.next_billing_at != boundary:
            return None
        next_billing_at = advance_billing_date(boundary, current.interval, anchor=current.billing_cycle_anchor)
        changes = {
            "current_period_start": boundary,
            "current_period_end": next_billing_at,
            "next_billing_at": next_billing_at,
        }
        if current.status in (SubscriptionStatus.past_due, SubscriptionStatus.trialing):
            changes["status"] = SubscriptionStatus.active
        if current.billing_cycle_anchor is None:
            changes["billing_cycle_anchor"] = boundary
        return current.model_copy(update=changes)

    return update_with_retry(subscriptions, subscription, settle)
