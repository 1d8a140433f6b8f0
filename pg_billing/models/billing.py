"""
Billing domain models.

Plans and cards are read-only inputs to the engine; subscriptions and billing
attempts carry the state the engine owns; transactions are immutable records
of completed charges.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class BillingInterval(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class SubscriptionStatus(str, Enum):
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    incomplete_expired = "incomplete_expired"
    trialing = "trialing"
    unpaid = "unpaid"


class BillingAttemptStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    requires_action = "requires_action"


class TransactionType(str, Enum):
    manual = "manual"
    recurring = "recurring"


BILLABLE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.trialing)
RETRYABLE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.past_due)
CLAIMABLE_ATTEMPT_STATUSES = (BillingAttemptStatus.pending, BillingAttemptStatus.requires_action)


class Plan(BaseModel):
    """Immutable plan template; subscriptions freeze its name/amount/currency."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    amount: Decimal
    currency: str
    interval: str
    trial_period_days: int = 0
    description: Optional[str] = None
    is_active: bool = True


class Card(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    gateway_token: str
    last_four: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    scheme: Optional[str] = None
    is_default: bool = False


class Subscription(BaseModel):
    id: Optional[int] = None
    user_id: str
    plan_id: Optional[int] = None
    card_id: Optional[int] = None
    plan_name: str
    amount: Decimal
    currency: str
    status: SubscriptionStatus
    # Kept as a plain string: unknown stored values fall back to monthly billing
    interval: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    billing_cycle_anchor: Optional[datetime] = None
    next_billing_at: datetime
    version: int = 0
    created_at: datetime


class BillingAttempt(BaseModel):
    id: Optional[int] = None
    subscription_id: int
    amount: Decimal
    currency: str
    status: BillingAttemptStatus
    attempt_number: int = 1
    # Due boundary (subscription.next_billing_at) this attempt collects for
    billing_period_start: Optional[datetime] = None
    scheduled_at: datetime
    processed_at: Optional[datetime] = None
    gateway_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    version: int = 0
    created_at: datetime


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    card_id: Optional[int] = None
    subscription_id: Optional[int] = None
    billing_attempt_id: Optional[int] = None
    invoice_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    gateway_transaction_id: Optional[str] = None
    type: TransactionType
    created_at: datetime
