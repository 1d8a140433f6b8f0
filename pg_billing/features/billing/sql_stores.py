"""
SQLAlchemy Core implementations of the billing store protocols.

Stores receive a session factory at construction time; nothing here reaches
for a process-wide connection. Every public method runs in its own short
session (commit on success, rollback on error).
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, exists, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from pg_billing.core.database import (
    billing_attempts,
    billing_job_runs,
    cards,
    plans,
    session_scope,
    subscriptions,
    transactions,
)
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


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class _SqlStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)


class SqlPlanStore(_SqlStore):
    def get_by_id(self, plan_id: int) -> Plan:
        with self._session() as session:
            row = session.execute(select(plans).where(plans.c.id == plan_id)).fetchone()
        if row is None:
            raise NotFoundError(f"plan {plan_id} not found")
        return Plan(
            id=row.id,
            name=row.name,
            amount=row.amount,
            currency=row.currency,
            interval=row.interval,
            trial_period_days=row.trial_period_days or 0,
            description=row.description,
            is_active=bool(row.is_active),
        )

    def create(self, plan: Plan) -> Plan:
        values = plan.model_dump(exclude={"id"})
        with self._session() as session:
            result = session.execute(insert(plans).values(**values))
            plan_id = result.inserted_primary_key[0]
        return plan.model_copy(update={"id": plan_id})


class SqlCardStore(_SqlStore):
    def get_by_id(self, card_id: int) -> Card:
        with self._session() as session:
            row = session.execute(select(cards).where(cards.c.id == card_id)).fetchone()
        if row is None:
            raise NotFoundError(f"card {card_id} not found")
        return Card(
            id=row.id,
            user_id=row.user_id,
            gateway_token=row.gateway_token,
            last_four=row.last_four,
            expiry_month=row.expiry_month,
            expiry_year=row.expiry_year,
            scheme=row.scheme,
            is_default=bool(row.is_default),
        )

    def create(self, card: Card) -> Card:
        values = card.model_dump(exclude={"id"})
        with self._session() as session:
            result = session.execute(insert(cards).values(**values))
            card_id = result.inserted_primary_key[0]
        return card.model_copy(update={"id": card_id})


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

_SUBSCRIPTION_MUTABLE = (
    "plan_id",
    "card_id",
    "plan_name",
    "amount",
    "currency",
    "status",
    "interval",
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "cancel_at_period_end",
    "canceled_at",
    "metadata",
    "billing_cycle_anchor",
    "next_billing_at",
)


def _subscription_from_row(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        card_id=row.card_id,
        plan_name=row.plan_name,
        amount=row.amount,
        currency=row.currency,
        status=SubscriptionStatus(row.status),
        interval=row.interval,
        current_period_start=_utc(row.current_period_start),
        current_period_end=_utc(row.current_period_end),
        trial_start=_utc(row.trial_start),
        trial_end=_utc(row.trial_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=_utc(row.canceled_at),
        metadata=row._mapping["metadata"] or {},
        billing_cycle_anchor=_utc(row.billing_cycle_anchor),
        next_billing_at=_utc(row.next_billing_at),
        version=row.version or 0,
        created_at=_utc(row.created_at),
    )


def _subscription_values(subscription: Subscription) -> Dict[str, Any]:
    values = {name: getattr(subscription, name) for name in _SUBSCRIPTION_MUTABLE}
    values["status"] = _enum_value(values["status"])
    values["metadata"] = dict(subscription.metadata or {})
    return values


class SqlSubscriptionStore(_SqlStore):
    def create(self, subscription: Subscription) -> Subscription:
        values = _subscription_values(subscription)
        values.update(user_id=subscription.user_id, created_at=subscription.created_at, version=0)
        with self._session() as session:
            result = session.execute(insert(subscriptions).values(**values))
            subscription_id = result.inserted_primary_key[0]
        return subscription.model_copy(update={"id": subscription_id, "version": 0})

    def get_by_id(self, subscription_id: int) -> Subscription:
        with self._session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"subscription {subscription_id} not found")
        return _subscription_from_row(row)

    def get_by_user(self, user_id: str, status: Optional[str] = None) -> List[Subscription]:
        stmt = select(subscriptions).where(subscriptions.c.user_id == user_id)
        if status:
            stmt = stmt.where(subscriptions.c.status == _enum_value(status))
        stmt = stmt.order_by(subscriptions.c.created_at.desc())
        with self._session() as session:
            rows = session.execute(stmt).fetchall()
        return [_subscription_from_row(r) for r in rows]

    def _compare_and_set(self, session: Session, subscription: Subscription, values: Dict[str, Any]) -> None:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == subscription.id)
            .where(subscriptions.c.version == subscription.version)
            .values(**values, version=subscription.version + 1)
        )
        if result.rowcount == 0:
            found = session.execute(
                select(subscriptions.c.id).where(subscriptions.c.id == subscription.id)
            ).fetchone()
            if found is None:
                raise NotFoundError(f"subscription {subscription.id} not found")
            raise ConflictError(f"subscription {subscription.id} was modified concurrently")

    def update(self, subscription: Subscription) -> Subscription:
        with self._session() as session:
            self._compare_and_set(session, subscription, _subscription_values(subscription))
        return subscription.model_copy(update={"version": subscription.version + 1})

    def cancel(self, subscription_id: int, at_period_end: bool, now: datetime) -> Subscription:
        current = self.get_by_id(subscription_id)
        changes: Dict[str, Any] = {"cancel_at_period_end": at_period_end}
        if not at_period_end:
            changes.update(status=SubscriptionStatus.canceled, canceled_at=now)
        return self.update(current.model_copy(update=changes))

    def get_due_for_billing(self, cutoff: datetime, now: datetime, limit: int) -> List[Subscription]:
        stmt = (
            select(subscriptions)
            .where(subscriptions.c.status.in_([s.value for s in BILLABLE_STATUSES]))
            .where(subscriptions.c.cancel_at_period_end.is_(False))
            .where(subscriptions.c.next_billing_at <= cutoff)
            .where(or_(subscriptions.c.trial_end.is_(None), subscriptions.c.trial_end <= now))
            .order_by(subscriptions.c.next_billing_at.asc(), subscriptions.c.id.asc())
            .limit(limit)
        )
        with self._session() as session:
            rows = session.execute(stmt).fetchall()
        return [_subscription_from_row(r) for r in rows]

    def claim_for_billing(self, subscription: Subscription) -> Optional[Subscription]:
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription.id)
                .where(subscriptions.c.version == subscription.version)
                .values(version=subscription.version + 1)
            )
            claimed = result.rowcount == 1
        if not claimed:
            return None
        return subscription.model_copy(update={"version": subscription.version + 1})

    def count_active(self) -> int:
        with self._session() as session:
            count = session.execute(
                select(func.count()).select_from(subscriptions).where(
                    subscriptions.c.status == SubscriptionStatus.active.value
                )
            ).scalar()
        return int(count or 0)


# ---------------------------------------------------------------------------
# Billing attempts
# ---------------------------------------------------------------------------

_ATTEMPT_MUTABLE = (
    "status",
    "attempt_number",
    "scheduled_at",
    "processed_at",
    "gateway_transaction_id",
    "error_code",
    "error_message",
)


def _attempt_from_row(row) -> BillingAttempt:
    return BillingAttempt(
        id=row.id,
        subscription_id=row.subscription_id,
        amount=row.amount,
        currency=row.currency,
        status=BillingAttemptStatus(row.status),
        attempt_number=row.attempt_number,
        billing_period_start=_utc(row.billing_period_start),
        scheduled_at=_utc(row.scheduled_at),
        processed_at=_utc(row.processed_at),
        gateway_transaction_id=row.gateway_transaction_id,
        error_code=row.error_code,
        error_message=row.error_message,
        version=row.version or 0,
        created_at=_utc(row.created_at),
    )


def _latest_for_subscription():
    """Correlated predicate: no newer attempt exists for the same subscription."""
    later = billing_attempts.alias("later")
    return ~exists().where(
        and_(
            later.c.subscription_id == billing_attempts.c.subscription_id,
            later.c.id > billing_attempts.c.id,
        )
    )


class SqlBillingAttemptStore(_SqlStore):
    def create(self, attempt: BillingAttempt) -> BillingAttempt:
        values = attempt.model_dump(exclude={"id", "version"})
        values["status"] = _enum_value(attempt.status)
        with self._session() as session:
            result = session.execute(insert(billing_attempts).values(**values, version=0))
            attempt_id = result.inserted_primary_key[0]
        return attempt.model_copy(update={"id": attempt_id, "version": 0})

    def get_by_id(self, attempt_id: int) -> BillingAttempt:
        with self._session() as session:
            row = session.execute(
                select(billing_attempts).where(billing_attempts.c.id == attempt_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"billing attempt {attempt_id} not found")
        return _attempt_from_row(row)

    def get_by_subscription(self, subscription_id: int, limit: int = 50) -> List[BillingAttempt]:
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.subscription_id == subscription_id)
                .order_by(billing_attempts.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def update(self, attempt: BillingAttempt) -> BillingAttempt:
        values = {name: getattr(attempt, name) for name in _ATTEMPT_MUTABLE}
        values["status"] = _enum_value(values["status"])
        with self._session() as session:
            result = session.execute(
                update(billing_attempts)
                .where(billing_attempts.c.id == attempt.id)
                .where(billing_attempts.c.version == attempt.version)
                .values(**values, version=attempt.version + 1)
            )
            if result.rowcount == 0:
                found = session.execute(
                    select(billing_attempts.c.id).where(billing_attempts.c.id == attempt.id)
                ).fetchone()
                if found is None:
                    raise NotFoundError(f"billing attempt {attempt.id} not found")
                raise ConflictError(f"billing attempt {attempt.id} was modified concurrently")
        return attempt.model_copy(update={"version": attempt.version + 1})

    def get_pending(self, now: datetime, limit: int) -> List[BillingAttempt]:
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.status.in_([s.value for s in CLAIMABLE_ATTEMPT_STATUSES]))
                .where(billing_attempts.c.scheduled_at <= now)
                .order_by(billing_attempts.c.scheduled_at.asc(), billing_attempts.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def claim(self, attempt: BillingAttempt, now: datetime) -> Optional[BillingAttempt]:
        with self._session() as session:
            result = session.execute(
                update(billing_attempts)
                .where(billing_attempts.c.id == attempt.id)
                .where(billing_attempts.c.version == attempt.version)
                .where(billing_attempts.c.status.in_([s.value for s in CLAIMABLE_ATTEMPT_STATUSES]))
                .values(
                    status=BillingAttemptStatus.processing.value,
                    processed_at=now,
                    version=attempt.version + 1,
                )
            )
            claimed = result.rowcount == 1
        if not claimed:
            return None
        return attempt.model_copy(update={
            "status": BillingAttemptStatus.processing,
            "processed_at": now,
            "version": attempt.version + 1,
        })

    def get_failed_for_retry(
        self,
        max_attempts: int,
        older_than: datetime,
        excluded_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        codes = [c.lower() for c in excluded_codes]
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.status == BillingAttemptStatus.failed.value)
                .where(billing_attempts.c.attempt_number < max_attempts)
                .where(billing_attempts.c.processed_at < older_than)
                .where(or_(
                    billing_attempts.c.error_code.is_(None),
                    func.lower(billing_attempts.c.error_code).not_in(codes),
                ))
                .where(_latest_for_subscription())
                .order_by(billing_attempts.c.processed_at.asc(), billing_attempts.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def get_exhausted(
        self,
        max_attempts: int,
        older_than: datetime,
        permanent_codes: Iterable[str],
        limit: int,
    ) -> List[BillingAttempt]:
        codes = [c.lower() for c in permanent_codes]
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.status == BillingAttemptStatus.failed.value)
                .where(billing_attempts.c.processed_at < older_than)
                .where(or_(
                    billing_attempts.c.attempt_number >= max_attempts,
                    func.lower(billing_attempts.c.error_code).in_(codes),
                ))
                .where(_latest_for_subscription())
                .order_by(billing_attempts.c.processed_at.asc(), billing_attempts.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def get_succeeded_without_transaction(self, limit: int) -> List[BillingAttempt]:
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.status == BillingAttemptStatus.succeeded.value)
                .where(~exists().where(transactions.c.billing_attempt_id == billing_attempts.c.id))
                .order_by(billing_attempts.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def get_succeeded_unsettled(self, limit: int) -> List[BillingAttempt]:
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .join(subscriptions, subscriptions.c.id == billing_attempts.c.subscription_id)
                .where(billing_attempts.c.status == BillingAttemptStatus.succeeded.value)
                .where(billing_attempts.c.billing_period_start == subscriptions.c.next_billing_at)
                .order_by(billing_attempts.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]

    def get_stuck_processing(self, older_than: datetime, limit: int) -> List[BillingAttempt]:
        with self._session() as session:
            rows = session.execute(
                select(billing_attempts)
                .where(billing_attempts.c.status == BillingAttemptStatus.processing.value)
                .where(billing_attempts.c.processed_at < older_than)
                .order_by(billing_attempts.c.processed_at.asc())
                .limit(limit)
            ).fetchall()
        return [_attempt_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def _transaction_from_row(row) -> Transaction:
    return Transaction(
        id=row.id,
        user_id=row.user_id,
        card_id=row.card_id,
        subscription_id=row.subscription_id,
        billing_attempt_id=row.billing_attempt_id,
        invoice_id=row.invoice_id,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        gateway_transaction_id=row.gateway_transaction_id,
        type=row.type,
        created_at=_utc(row.created_at),
    )


class SqlTransactionStore(_SqlStore):
    def create(self, transaction: Transaction) -> Transaction:
        values = transaction.model_dump(exclude={"id"})
        values["type"] = _enum_value(transaction.type)
        try:
            with self._session() as session:
                result = session.execute(insert(transactions).values(**values))
                transaction_id = result.inserted_primary_key[0]
        except IntegrityError as e:
            raise ConflictError(f"transaction for attempt {transaction.billing_attempt_id} already exists") from e
        return transaction.model_copy(update={"id": transaction_id})

    def get_by_attempt(self, attempt_id: int) -> Optional[Transaction]:
        with self._session() as session:
            row = session.execute(
                select(transactions).where(transactions.c.billing_attempt_id == attempt_id)
            ).fetchone()
        return _transaction_from_row(row) if row else None

    def get_by_user(self, user_id: str) -> List[Transaction]:
        with self._session() as session:
            rows = session.execute(
                select(transactions)
                .where(transactions.c.user_id == user_id)
                .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
            ).fetchall()
        return [_transaction_from_row(r) for r in rows]


class SqlJobRunStore(_SqlStore):
    def record(
        self,
        job_name: str,
        started_at: datetime,
        finished_at: datetime,
        status: str,
        stats: Dict[str, Any],
    ) -> None:
        with self._session() as session:
            session.execute(
                insert(billing_job_runs).values(
                    job_name=job_name,
                    started_at=started_at,
                    finished_at=finished_at,
                    status=status,
                    stats_json=json.dumps(stats, default=str),
                )
            )

    def latest(self, job_name: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.execute(
                select(billing_job_runs)
                .where(billing_job_runs.c.job_name == job_name)
                .order_by(billing_job_runs.c.id.desc())
                .limit(1)
            ).fetchone()
        if row is None:
            return None
        return {
            "job_name": row.job_name,
            "started_at": _utc(row.started_at),
            "finished_at": _utc(row.finished_at),
            "status": row.status,
            "stats": json.loads(row.stats_json) if row.stats_json else {},
        }
