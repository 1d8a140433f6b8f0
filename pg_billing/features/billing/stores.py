"""
Store contracts consumed by the billing engine.

Each store is a small CRUD protocol over one entity. Production code uses the
SQLAlchemy implementations in sql_stores.py; tests and local runs use
memory_stores.py. Lookups of a single row raise NotFoundError; updates are
compare-and-set on the row's version token and raise ConflictError when
another writer got there first.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pg_billing.models.billing import (
    BillingAttempt,
    Card,
    Plan,
    Subscription,
    Transaction,
)


class PlanStore(Protocol):
    def get_by_id(self, plan_id: int) -> Plan:
        ...


class CardStore(Protocol):
    def get_by_id(self, card_id: int) -> Card:
        ...


class SubscriptionStore(Protocol):
    def create(self, subscription: Subscription) -> Subscription:
        ...

    def get_by_id(self, subscription_id: int) -> Subscription:
        ...

    def get_by_user(self, user_id: str, status: Optional[str] = None) -> List[Subscription]:
        ...

    def update(self, subscription: Subscription) -> Subscription:
        """Persist all mutable fields if the stored version still matches; returns the bumped copy."""
        ...

    def cancel(self, subscription_id: int, at_period_end: bool, now: datetime) -> Subscription:
        ...

    def get_due_for_billing(self, cutoff: datetime, now: datetime, limit: int) -> List[Subscription]:
        """Active/trialing, not cancel-at-period-end, next_billing_at <= cutoff, trial over; oldest first."""
        ...

    def claim_for_billing(self, subscription: Subscription) -> Optional[Subscription]:
        """Bump the version iff unchanged since read; None when another caller claimed it."""
        ...

    def count_active(self) -> int:
        ...


class BillingAttemptStore(Protocol):
    def create(self, attempt: BillingAttempt) -> BillingAttempt:
        ...

    def get_by_id(self, attempt_id: int) -> BillingAttempt:
        ...

    def get_by_subscription(self, subscription_id: int, limit: int = 50) -> List[BillingAttempt]:
        """Newest first."""
        ...

    def update(self, attempt: BillingAttempt) -> BillingAttempt:
        ...

    def get_pending(self, now: datetime, limit: int) -> List[BillingAttempt]:
        """pending/requires_action with scheduled_at <= now, oldest schedule first."""
        ...

    def claim(self, attempt: BillingAttempt, now: datetime) -> Optional[BillingAttempt]:
        """Move a pending/requires_action attempt to processing iff unchanged since read."""
        ...

    def get_failed_for_retry(
        self,
        max_attempts: int,
        older_than: datetime,
        excluded_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        """Latest attempt per subscription, failed, ordinal < max_attempts, processed before older_than,
        error_code NULL or not in excluded_codes (case-insensitive); oldest processed first."""
        ...

    def get_exhausted(
        self,
        max_attempts: int,
        older_than: datetime,
        permanent_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        """Latest attempt per subscription, failed, processed before older_than, and either
        ordinal >= max_attempts or error_code in permanent_codes."""
        ...

    def get_succeeded_without_transaction(self, limit: int) -> List[BillingAttempt]:
        ...

    def get_succeeded_unsettled(self, limit: int) -> List[BillingAttempt]:
        """Succeeded attempts whose billing_period_start is still the subscription's next_billing_at."""
        ...

    def get_stuck_processing(self, older_than: datetime, limit: int) -> List[BillingAttempt]:
        ...


class TransactionStore(Protocol):
    def create(self, transaction: Transaction) -> Transaction:
        """Insert a transaction, linked to subscription and attempt when those are set."""
        ...

    def get_by_attempt(self, attempt_id: int) -> Optional[Transaction]:
        ...

    def get_by_user(self, user_id: str) -> List[Transaction]:
        ...


class JobRunStore(Protocol):
    def record(
        self,
        job_name: str,
        started_at: datetime,
        finished_at: datetime,
        status: str,
        stats: Dict[str, Any],
    ) -> None:
        ...
