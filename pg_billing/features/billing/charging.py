"""
Charge step shared by the subscription processor, the pending-attempt
processor and manual payments.

Outcome classification:
- gateway raised (transport, timeout, non-2xx) -> failed, error_code None,
  error_message = error text
- gateway answered but not approved -> failed, error_code = gateway code,
  error_message = gateway result
- approved -> succeeded with the gateway transaction id
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pg_billing.features.billing.gateway import GatewayError, PaymentGateway
from pg_billing.features.billing.stores import BillingAttemptStore, TransactionStore
from pg_billing.models.billing import (
    BillingAttempt,
    BillingAttemptStatus,
    Card,
    Transaction,
    TransactionType,
)

logger = logging.getLogger("pg_billing.billing")


@dataclass(frozen=True)
class ChargeOutcome:
    approved: bool
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    transport_error: bool = False


def charge_card(gateway: PaymentGateway, card: Card, amount: Decimal, currency: str) -> ChargeOutcome:
    try:
        result = gateway.charge(card.gateway_token, amount, currency)
    except GatewayError as e:
        return ChargeOutcome(approved=False, error_message=str(e), transport_error=True)

    if result.approved:
        return ChargeOutcome(
            approved=True,
            transaction_id=result.transaction_id,
            transaction_status=result.transaction_status,
        )
    return ChargeOutcome(
        approved=False,
        error_code=result.gateway_code or None,
        error_message=result.result,
    )


def generate_invoice_id(now: Optional[datetime] = None) -> str:
    seconds = int(now.timestamp()) if now else int(time.time())
    return f"INV-{seconds}"


def finish_attempt(
    attempts: BillingAttemptStore,
    attempt: BillingAttempt,
    outcome: ChargeOutcome,
    now: datetime,
) -> BillingAttempt:
    """Write the terminal status of a processing attempt."""
    if outcome.approved:
        changes = {
            "status": BillingAttemptStatus.succeeded,
            "processed_at": now,
            "gateway_transaction_id": outcome.transaction_id,
            "error_code": None,
            "error_message": None,
        }
    else:
        changes = {
            "status": BillingAttemptStatus.failed,
            "processed_at": now,
            "error_code": outcome.error_code,
            "error_message": outcome.error_message,
        }
    return attempts.update(attempt.model_copy(update=changes))


def fail_attempt(
    attempts: BillingAttemptStore,
    attempt: BillingAttempt,
    message: str,
    now: datetime,
) -> BillingAttempt:
    outcome = ChargeOutcome(approved=False, error_message=message)
    return finish_attempt(attempts, attempt, outcome, now)


def record_transaction(
    transactions: TransactionStore,
    *,
    user_id: str,
    card_id: Optional[int],
    amount: Decimal,
    currency: str,
    outcome: ChargeOutcome,
    now: datetime,
    type: TransactionType = TransactionType.recurring,
    subscription_id: Optional[int] = None,
    attempt_id: Optional[int] = None,
) -> Optional[Transaction]:
    """Insert the Transaction for an approved charge.

    A failure here is logged and swallowed: the money has moved and the
    attempt is already succeeded. The reconcile job writes the missing row.
    """
    transaction = Transaction(
        user_id=user_id,
        card_id=card_id,
        subscription_id=subscription_id,
        billing_attempt_id=attempt_id,
        invoice_id=generate_invoice_id(now),
        amount=amount,
        currency=currency,
        status=outcome.transaction_status or "CAPTURED",
        gateway_transaction_id=outcome.transaction_id,
        type=type,
        created_at=now,
    )
    try:
        return transactions.create(transaction)
    except Exception as e:
        logger.warning(
            f"[billing] Warning: Failed to record transaction for attempt {attempt_id}: {e}",
            extra={"subscription_id": subscription_id, "attempt_id": attempt_id},
        )
        return None
