"""
Pending billing attempts, manual payments and billing history.

Attempts reach this path from the retry policy, from subscription creation
(the first charge) and from operators. Each one is claimed with its version
token before the card is charged, so the scheduled cycle and an admin
"process now" call cannot charge the same attempt twice.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from pg_billing.core.config import BillingConfig
from pg_billing.core.errors import (
    NotFoundError,
    PaymentDeclinedError,
    PaymentFailedError,
    ValidationError,
)
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
    SubscriptionStore,
    TransactionStore,
)
from pg_billing.features.billing.subscription_service import settle_billing_cycle, update_with_retry
from pg_billing.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionType,
)

logger = logging.getLogger("pg_billing.billing.attempts")

DEFAULT_CURRENCY = "LKR"
HISTORY_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _lift_past_due(current: Subscription) -> Optional[Subscription]:
    if current.status != SubscriptionStatus.past_due:
        return None
    return current.model_copy(update={"status": SubscriptionStatus.active})


class AttemptService:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        attempts: BillingAttemptStore,
        transactions: TransactionStore,
        cards: CardStore,
        gateway: PaymentGateway,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
        default_currency: str = DEFAULT_CURRENCY,
    ):
        self.subscriptions = subscriptions
        self.attempts = attempts
        self.transactions = transactions
        self.cards = cards
        self.gateway = gateway
        self.config = config or BillingConfig()
        self._clock = clock
        self.default_currency = default_currency

    def process_pending_billing_attempts(
        self,
        limit: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Charge every pending attempt whose time has come. Returns approved charges."""
        now = self._clock()
        pending = self.attempts.get_pending(now, limit or self.config.pending_attempt_limit)

        processed = 0
        for attempt in pending:
            if should_stop and should_stop():
                logger.info("[attempts] stop requested, leaving pending attempts for the next cycle")
                break
            try:
                if self.process_attempt(attempt, now):
                    processed += 1
            except Exception as e:
                logger.error(
                    f"[attempts] failed to process billing attempt {attempt.id}: {e}",
                    extra={"subscription_id": attempt.subscription_id, "attempt_id": attempt.id},
                    exc_info=True,
                )

        logger.info(f"[attempts] processed {processed} of {len(pending)} pending attempts")
        return processed

    def process_attempt(self, attempt: BillingAttempt, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()

        claimed = self.attempts.claim(attempt, now)
        if claimed is None:
            logger.info(
                f"[attempts] attempt {attempt.id} claimed elsewhere, skipping",
                extra={"attempt_id": attempt.id},
            )
            return False

        try:
            subscription = self.subscriptions.get_by_id(claimed.subscription_id)
        except NotFoundError:
            fail_attempt(self.attempts, claimed, "subscription not found", now)
            logger.warning(f"[attempts] subscription {claimed.subscription_id} not found for attempt {claimed.id}")
            return False

        try:
            if subscription.card_id is None:
                raise NotFoundError(f"subscription {subscription.id} has no card")
            card = self.cards.get_by_id(subscription.card_id)
        except NotFoundError:
            fail_attempt(self.attempts, claimed, "card not found", now)
            logger.warning(
                f"[attempts] card not found for subscription {subscription.id}",
                extra={"subscription_id": subscription.id, "attempt_id": claimed.id},
            )
            return False

        # Amount and currency were frozen on the attempt when it was created
        outcome = charge_card(self.gateway, card, claimed.amount, claimed.currency)
        finished = finish_attempt(self.attempts, claimed, outcome, now)

        if not outcome.approved:
            logger.warning(
                f"[attempts] attempt {finished.id} failed: {outcome.error_code or outcome.error_message}",
                extra={
                    "subscription_id": subscription.id,
                    "attempt_id": finished.id,
                    "attempt_number": finished.attempt_number,
                    "error_code": outcome.error_code,
                },
            )
            return False

        record_transaction(
            self.transactions,
            user_id=subscription.user_id,
            card_id=card.id,
            amount=claimed.amount,
            currency=claimed.currency,
            outcome=outcome,
            now=now,
            type=TransactionType.recurring,
            subscription_id=subscription.id,
            attempt_id=finished.id,
        )
        self._apply_success(subscription, finished)
        return True

    def _apply_success(self, subscription: Subscription, attempt: BillingAttempt) -> None:
        # A retry of the currently due boundary settles that cycle; anything else
        # only lifts past_due.
        if (
            attempt.billing_period_start is not None
            and attempt.billing_period_start == subscription.next_billing_at
            and subscription.status in (SubscriptionStatus.active, SubscriptionStatus.past_due)
        ):
            settle_billing_cycle(self.subscriptions, subscription, attempt.billing_period_start)
        elif subscription.status == SubscriptionStatus.past_due:
            update_with_retry(self.subscriptions, subscription, _lift_past_due)
        else:
            return
        logger.info(
            f"[attempts] subscription {subscription.id} recovered by attempt {attempt.attempt_number}",
            extra={"subscription_id": subscription.id, "attempt_id": attempt.id},
        )

    def schedule_manual_attempt(self, subscription_id: int, scheduled_at: Optional[datetime] = None) -> BillingAttempt:
        """Queue an operator-requested charge for the subscription's current boundary."""
        subscription = self.subscriptions.get_by_id(subscription_id)
        if subscription.status not in (SubscriptionStatus.active, SubscriptionStatus.past_due):
            raise ValidationError(f"subscription {subscription_id} is {subscription.status.value}")

        history = self.attempts.get_by_subscription(subscription_id, limit=1)
        latest = history[0] if history else None
        if latest is not None and latest.status in (
            BillingAttemptStatus.pending,
            BillingAttemptStatus.processing,
            BillingAttemptStatus.requires_action,
        ):
            raise ValidationError(f"subscription {subscription_id} already has attempt {latest.id} in flight")

        attempt_number = 1
        if latest is not None and latest.billing_period_start == subscription.next_billing_at:
            attempt_number = latest.attempt_number + 1

        now = self._clock()
        return self.attempts.create(BillingAttempt(
            subscription_id=subscription.id,
            amount=subscription.amount,
            currency=subscription.currency,
            status=BillingAttemptStatus.pending,
            attempt_number=attempt_number,
            billing_period_start=subscription.next_billing_at,
            scheduled_at=scheduled_at or now,
            created_at=now,
        ))

    def create_manual_payment(
        self,
        user_id: str,
        card_id: int,
        amount: Decimal,
        currency: Optional[str] = None,
    ) -> Transaction:
        """
        Charge a saved card once, outside any subscription.

        Raises:
            NotFoundError: card does not exist
            ValidationError: card owned by someone else, or non-positive amount
            PaymentFailedError: gateway unreachable or returned an API error
            PaymentDeclinedError: gateway declined the charge
        """
        card = self.cards.get_by_id(card_id)
        if card.user_id != user_id:
            raise ValidationError("card does not belong to user")
        if Decimal(amount) <= 0:
            raise ValidationError("amount must be greater than 0")
        currency = currency or self.default_currency

        outcome = charge_card(self.gateway, card, Decimal(amount), currency)
        if outcome.transport_error:
            raise PaymentFailedError(f"payment failed: {outcome.error_message}")
        if not outcome.approved:
            raise PaymentDeclinedError(f"payment declined: {outcome.error_code}")

        now = self._clock()
        transaction = record_transaction(
            self.transactions,
            user_id=user_id,
            card_id=card.id,
            amount=Decimal(amount),
            currency=currency,
            outcome=outcome,
            now=now,
            type=TransactionType.manual,
        )
        if transaction is None:
            raise PaymentFailedError("payment captured but the transaction could not be recorded")
        return transaction

    def get_subscription_billing_history(self, subscription_id: int) -> List[BillingAttempt]:
        return self.attempts.get_by_subscription(subscription_id, limit=HISTORY_LIMIT)

    def get_billing_history(self, user_id: str) -> List[Transaction]:
        return self.transactions.get_by_user(user_id)
