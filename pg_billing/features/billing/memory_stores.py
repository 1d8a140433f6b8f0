"""
In-memory implementations of the billing store protocols.

Used by the test-suite. Semantics match
sql_stores.py, including version compare-and-set and latest-attempt rules.
"""
import itertools
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pg_billing.core.errors import ConflictError, NotFoundError
from pg_billing.models.billing import (
    BILLABLE_STATUSES,
    CLAIMABLE_ATTEMPT_STATUSES,
    BillingAttempt,
    BillingAttemptStatus,
    Card,
    Plan,
    Subscription,
    SubscriptionStatus,
    Transaction,
)


class MemoryPlanStore:
    def __init__(self):
        self._plans: Dict[int, Plan] = {}
        self._ids = itertools.count(1)

    def create(self, plan: Plan) -> Plan:
        stored = plan.model_copy(update={"id": next(self._ids)})
        self._plans[stored.id] = stored
        return stored

    def get_by_id(self, plan_id: int) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"plan {plan_id} not found")
        return plan


class MemoryCardStore:
    def __init__(self):
        self._cards: Dict[int, Card] = {}
        self._ids = itertools.count(1)

    def create(self, card: Card) -> Card:
        stored = card.model_copy(update={"id": next(self._ids)})
        self._cards[stored.id] = stored
        return stored

    def get_by_id(self, card_id: int) -> Card:
        card = self._cards.get(card_id)
        if card is None:
            raise NotFoundError(f"card {card_id} not found")
        return card

    def delete(self, card_id: int) -> None:
        self._cards.pop(card_id, None)


class MemorySubscriptionStore:
    def __init__(self):
        self._rows: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, subscription: Subscription) -> Subscription:
        with self._lock:
            stored = subscription.model_copy(update={"id": next(self._ids), "version": 0}, deep=True)
            self._rows[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_by_id(self, subscription_id: int) -> Subscription:
        row = self._rows.get(subscription_id)
        if row is None:
            raise NotFoundError(f"subscription {subscription_id} not found")
        return row.model_copy(deep=True)

    def get_by_user(self, user_id: str, status: Optional[str] = None) -> List[Subscription]:
        rows = [r for r in self._rows.values() if r.user_id == user_id]
        if status:
            rows = [r for r in rows if r.status == status]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    def update(self, subscription: Subscription) -> Subscription:
        with self._lock:
            current = self._rows.get(subscription.id)
            if current is None:
                raise NotFoundError(f"subscription {subscription.id} not found")
            if current.version != subscription.version:
                raise ConflictError(f"subscription {subscription.id} was modified concurrently")
            stored = subscription.model_copy(update={"version": subscription.version + 1}, deep=True)
            self._rows[stored.id] = stored
            return stored.model_copy(deep=True)

    def cancel(self, subscription_id: int, at_period_end: bool, now: datetime) -> Subscription:
        current = self.get_by_id(subscription_id)
        changes = {"cancel_at_period_end": at_period_end}
        if not at_period_end:
            changes.update(status=SubscriptionStatus.canceled, canceled_at=now)
        return self.update(current.model_copy(update=changes))

    def get_due_for_billing(self, cutoff: datetime, now: datetime, limit: int) -> List[Subscription]:
        due = [
            r for r in self._rows.values()
            if r.status in BILLABLE_STATUSES
            and not r.cancel_at_period_end
            and r.next_billing_at <= cutoff
            and (r.trial_end is None or r.trial_end <= now)
        ]
        due.sort(key=lambda r: (r.next_billing_at, r.id))
        return [r.model_copy(deep=True) for r in due[:limit]]

    def claim_for_billing(self, subscription: Subscription) -> Optional[Subscription]:
        with self._lock:
            current = self._rows.get(subscription.id)
            if current is None or current.version != subscription.version:
                return None
            stored = current.model_copy(update={"version": current.version + 1}, deep=True)
            self._rows[stored.id] = stored
        return subscription.model_copy(update={"version": subscription.version + 1})

    def count_active(self) -> int:
        return sum(1 for r in self._rows.values() if r.status == SubscriptionStatus.active)


class MemoryBillingAttemptStore:
    def __init__(
        self,
        transactions: Optional["MemoryTransactionStore"] = None,
        subscriptions: Optional[MemorySubscriptionStore] = None,
    ):
        self._transactions = transactions
        self._subscriptions = subscriptions
        self._rows: Dict[int, BillingAttempt] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, attempt: BillingAttempt) -> BillingAttempt:
        with self._lock:
            stored = attempt.model_copy(update={"id": next(self._ids), "version": 0})
            self._rows[stored.id] = stored
            return stored

    def get_by_id(self, attempt_id: int) -> BillingAttempt:
        row = self._rows.get(attempt_id)
        if row is None:
            raise NotFoundError(f"billing attempt {attempt_id} not found")
        return row

    def get_by_subscription(self, subscription_id: int, limit: int = 50) -> List[BillingAttempt]:
        rows = [r for r in self._rows.values() if r.subscription_id == subscription_id]
        rows.sort(key=lambda r: r.id, reverse=True)
        return rows[:limit]

    def update(self, attempt: BillingAttempt) -> BillingAttempt:
        with self._lock:
            current = self._rows.get(attempt.id)
            if current is None:
                raise NotFoundError(f"billing attempt {attempt.id} not found")
            if current.version != attempt.version:
                raise ConflictError(f"billing attempt {attempt.id} was modified concurrently")
            stored = attempt.model_copy(update={"version": attempt.version + 1})
            self._rows[stored.id] = stored
            return stored

    def get_pending(self, now: datetime, limit: int) -> List[BillingAttempt]:
        rows = [
            r for r in self._rows.values()
            if r.status in CLAIMABLE_ATTEMPT_STATUSES and r.scheduled_at <= now
        ]
        rows.sort(key=lambda r: (r.scheduled_at, r.id))
        return rows[:limit]

    def claim(self, attempt: BillingAttempt, now: datetime) -> Optional[BillingAttempt]:
        with self._lock:
            current = self._rows.get(attempt.id)
            if (
                current is None
                or current.version != attempt.version
                or current.status not in CLAIMABLE_ATTEMPT_STATUSES
            ):
                return None
            stored = current.model_copy(update={
                "status": BillingAttemptStatus.processing,
                "processed_at": now,
                "version": current.version + 1,
            })
            self._rows[stored.id] = stored
            return stored

    def _latest_per_subscription(self) -> List[BillingAttempt]:
        latest: Dict[int, BillingAttempt] = {}
        for row in self._rows.values():
            seen = latest.get(row.subscription_id)
            if seen is None or row.id > seen.id:
                latest[row.subscription_id] = row
        return list(latest.values())

    def get_failed_for_retry(
        self,
        max_attempts: int,
        older_than: datetime,
        excluded_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        excluded = {c.lower() for c in excluded_codes}
        rows = [
            r for r in self._latest_per_subscription()
            if r.status == BillingAttemptStatus.failed
            and r.attempt_number < max_attempts
            and r.processed_at is not None
            and r.processed_at < older_than
            and (r.error_code is None or r.error_code.lower() not in excluded)
        ]
        rows.sort(key=lambda r: (r.processed_at, r.id))
        return rows[:limit]

    def get_exhausted(
        self,
        max_attempts: int,
        older_than: datetime,
        permanent_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        permanent = {c.lower() for c in permanent_codes}
        rows = [
            r for r in self._latest_per_subscription()
            if r.status == BillingAttemptStatus.failed
            and r.processed_at is not None
            and r.processed_at < older_than
            and (
                r.attempt_number >= max_attempts
                or (r.error_code is not None and r.error_code.lower() in permanent)
            )
        ]
        rows.sort(key=lambda r: (r.processed_at, r.id))
        return rows[:limit]

    def get_succeeded_without_transaction(self, limit: int) -> List[BillingAttempt]:
        recorded = self._transactions.attempt_ids() if self._transactions is not None else set()
        rows = [
            r for r in self._rows.values()
            if r.status == BillingAttemptStatus.succeeded and r.id not in recorded
        ]
        rows.sort(key=lambda r: r.id)
        return rows[:limit]

    def get_succeeded_unsettled(self, limit: int) -> List[BillingAttempt]:
        if self._subscriptions is None:
            return []
        rows = []
        for r in self._rows.values():
            if r.status != BillingAttemptStatus.succeeded or r.billing_period_start is None:
                continue
            try:
                subscription = self._subscriptions.get_by_id(r.subscription_id)
            except NotFoundError:
                continue
            if subscription.next_billing_at == r.billing_period_start:
                rows.append(r)
        rows.sort(key=lambda r: r.id)
        return rows[:limit]

    def get_stuck_processing(self, older_than: datetime, limit: int) -> List[BillingAttempt]:
        rows = [
            r for r in self._rows.values()
            if r.status == BillingAttemptStatus.processing
            and r.processed_at is not None
            and r.processed_at < older_than
        ]
        rows.sort(key=lambda r: r.processed_at)
        return rows[:limit]


class MemoryTransactionStore:
    def __init__(self):
        self._rows: Dict[int, Transaction] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        # Set by tests to simulate a write failure after a successful charge
        self.fail_writes = False

    def create(self, transaction: Transaction) -> Transaction:
        if self.fail_writes:
            raise RuntimeError("transaction store unavailable")
        with self._lock:
            if transaction.billing_attempt_id is not None and transaction.billing_attempt_id in self.attempt_ids():
                raise ConflictError(f"transaction for attempt {transaction.billing_attempt_id} already exists")
            stored = transaction.model_copy(update={"id": next(self._ids)})
            self._rows[stored.id] = stored
            return stored

    def attempt_ids(self) -> set:
        return {r.billing_attempt_id for r in self._rows.values() if r.billing_attempt_id is not None}

    def get_by_attempt(self, attempt_id: int) -> Optional[Transaction]:
        for row in self._rows.values():
            if row.billing_attempt_id == attempt_id:
                return row
        return None

    def get_by_user(self, user_id: str) -> List[Transaction]:
        rows = [r for r in self._rows.values() if r.user_id == user_id]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return rows

    def all(self) -> List[Transaction]:
        return sorted(self._rows.values(), key=lambda r: r.id)


class MemoryJobRunStore:
    def __init__(self):
        self.runs: List[Dict] = []

    def record(self, job_name, started_at, finished_at, status, stats) -> None:
        self.runs.append({
            "job_name": job_name,
            "started_at": started_at,
            "finished_at": finished_at,
            "status": status,
            "stats": dict(stats),
        })

    def latest(self, job_name: str) -> Optional[Dict]:
        for run in reversed(self.runs):
            if run["job_name"] == job_name:
                return run
        return None
