"""
Retry policy for failed billing attempts.

Deterministic and idempotent: only the latest attempt of a subscription is a
retry candidate, so a failed attempt that already has a follow-up is never
retried twice. Backoff is keyed by the failed attempt's ordinal:

    1 -> retry now
    2 -> processed_at + 72h
    3 -> processed_at + 168h
    4+ -> no more retries
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pg_billing.core.config import BillingConfig
from pg_billing.core.errors import ConflictError, NotFoundError
from pg_billing.features.billing.stores import BillingAttemptStore, SubscriptionStore
from pg_billing.models.billing import (
    RETRYABLE_STATUSES,
    BillingAttempt,
    BillingAttemptStatus,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger("pg_billing.billing.retry")

# Declines that no amount of waiting will fix
PERMANENT_DECLINE_CODES = frozenset({"card_declined", "insufficient_funds", "invalid_card"})

_BACKOFF = {
    1: timedelta(0),
    2: timedelta(hours=72),
    3: timedelta(hours=168),
}


def is_permanent_decline(error_code: Optional[str]) -> bool:
    return bool(error_code) and error_code.lower() in PERMANENT_DECLINE_CODES


def next_retry_delay(attempt_number: int, error_code: Optional[str] = None) -> Optional[timedelta]:
    """Delay before retrying a failed attempt, or None when it must not be retried."""
    if is_permanent_decline(error_code):
        return None
    return _BACKOFF.get(attempt_number)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        attempts: BillingAttemptStore,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.subscriptions = subscriptions
        self.attempts = attempts
        self.config = config or BillingConfig()
        self._clock = clock

    def retry_failed_billing(self, max_attempts: Optional[int] = None) -> int:
        """Schedule follow-up attempts for retryable failures. Returns retries created."""
        if max_attempts is None:
            max_attempts = self.config.max_retry_attempts
        now = self._clock()
        older_than = now - self.config.retry_cooldown

        candidates = self.attempts.get_failed_for_retry(
            max_attempts, older_than, PERMANENT_DECLINE_CODES, self.config.retry_scan_limit
        )
        created = 0
        for failed in candidates:
            try:
                if self._schedule_retry(failed, now):
                    created += 1
            except Exception as e:
                logger.error(
                    f"[retry] failed to schedule retry for attempt {failed.id}: {e}",
                    extra={"subscription_id": failed.subscription_id, "attempt_id": failed.id},
                )

        if self.config.mark_unpaid_on_exhaustion:
            self.mark_exhausted(max_attempts, now)

        logger.info(f"[retry] scheduled {created} retries from {len(candidates)} candidates")
        return created

    def _schedule_retry(self, failed: BillingAttempt, now: datetime) -> bool:
        try:
            subscription = self.subscriptions.get_by_id(failed.subscription_id)
        except NotFoundError:
            logger.warning(f"[retry] subscription {failed.subscription_id} not found, skipping attempt {failed.id}")
            return False

        if subscription.status not in RETRYABLE_STATUSES:
            return False

        delay = next_retry_delay(failed.attempt_number, failed.error_code)
        if delay is None:
            if self.config.mark_unpaid_on_exhaustion:
                self._mark_unpaid(subscription, failed)
            return False

        scheduled_at = max(now, (failed.processed_at or now) + delay)
        retry = self.attempts.create(BillingAttempt(
            subscription_id=failed.subscription_id,
            amount=failed.amount,
            currency=failed.currency,
            status=BillingAttemptStatus.pending,
            attempt_number=failed.attempt_number + 1,
            billing_period_start=failed.billing_period_start,
            scheduled_at=scheduled_at,
            created_at=now,
        ))
        logger.info(
            f"[retry] attempt {retry.attempt_number} for subscription {subscription.id} scheduled at {scheduled_at.isoformat()}",
            extra={"subscription_id": subscription.id, "attempt_id": retry.id, "attempt_number": retry.attempt_number},
        )

        if failed.attempt_number == 1 and subscription.status == SubscriptionStatus.active:
            try:
                self.subscriptions.update(subscription.model_copy(update={"status": SubscriptionStatus.past_due}))
            except ConflictError:
                logger.warning(f"[retry] subscription {subscription.id} changed while marking past_due")
        return True

    def mark_exhausted(self, max_attempts: int, now: Optional[datetime] = None) -> int:
        """Move subscriptions whose latest failure will never be retried to unpaid."""
        now = now or self._clock()
        exhausted = self.attempts.get_exhausted(
            max_attempts,
            now - self.config.retry_cooldown,
            PERMANENT_DECLINE_CODES,
            self.config.retry_scan_limit,
        )
        marked = 0
        for failed in exhausted:
            try:
                subscription = self.subscriptions.get_by_id(failed.subscription_id)
            except NotFoundError:
                continue
            if subscription.status in RETRYABLE_STATUSES and self._mark_unpaid(subscription, failed):
                marked += 1
        return marked

    def _mark_unpaid(self, subscription: Subscription, failed: BillingAttempt) -> bool:
        try:
            self.subscriptions.update(subscription.model_copy(update={"status": SubscriptionStatus.unpaid}))
        except ConflictError:
            logger.warning(f"[retry] subscription {subscription.id} changed while marking unpaid")
            return False
        logger.warning(
            f"[retry] subscription {subscription.id} marked unpaid after attempt {failed.attempt_number} ({failed.error_code or 'no code'})",
            extra={"subscription_id": subscription.id, "attempt_id": failed.id, "error_code": failed.error_code},
        )
        return True
