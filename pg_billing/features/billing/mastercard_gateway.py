"""
Mastercard Payment Gateway Services (MPGS) implementation.

Implements the PaymentGateway protocol against the MPGS REST API using httpx.
Card data never passes through here; only gateway tokens created elsewhere.
"""
import logging
import random
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx

from pg_billing.core.config import Settings, settings
from pg_billing.features.billing.gateway import (
    ChargeResult,
    GatewayError,
    GatewayTimeoutError,
)

logger = logging.getLogger("pg_billing.gateway")


def format_amount(amount: Decimal) -> str:
    """MPGS expects amounts as strings with two decimals."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def generate_order_id() -> str:
    return str(random.randint(1, 999_999_999))


class MastercardGateway:
    """MPGS implementation of PaymentGateway protocol."""

    def __init__(
        self,
        host: Optional[str] = None,
        merchant_id: Optional[str] = None,
        api_password: Optional[str] = None,
        api_version: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
        settings_obj: Optional[Settings] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            host: Gateway host (defaults to MASTERCARD_HOST)
            merchant_id: Merchant ID (defaults to MASTERCARD_MERCHANT_ID)
            api_password: Integration password (defaults to MASTERCARD_API_PASSWORD)
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests inject a MockTransport)
        """
        cfg = settings_obj or settings
        self.host = host or cfg.MASTERCARD_HOST
        self.merchant_id = merchant_id or cfg.MASTERCARD_MERCHANT_ID
        self.api_password = api_password or cfg.MASTERCARD_API_PASSWORD
        self.api_version = api_version or cfg.MASTERCARD_API_VERSION

        if not self.merchant_id or not self.api_password:
            raise GatewayError("MASTERCARD_MERCHANT_ID and MASTERCARD_API_PASSWORD must be configured")

        self._client = client or httpx.Client(
            base_url=f"https://{self.host}",
            auth=(f"merchant.{self.merchant_id}", self.api_password),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def _transaction_path(self, order_id: str, transaction_id: str) -> str:
        return (
            f"/api/rest/version/{self.api_version}/merchant/{self.merchant_id}"
            f"/order/{order_id}/transaction/{transaction_id}"
        )

    def _put(self, path: str, body: Dict[str, Any], order_id: str) -> ChargeResult:
        try:
            response = self._client.put(path, json=body)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"failed to send request: {e}") from e

        if response.status_code not in (200, 201):
            raise GatewayError(f"API error {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(f"failed to decode response: {e}") from e

        transaction = data.get("transaction") or {}
        gateway_code = (data.get("response") or {}).get("gatewayCode") or data.get("gatewayCode") or ""
        result = ChargeResult(
            result=data.get("result", ""),
            gateway_code=gateway_code,
            order_id=(data.get("order") or {}).get("id") or order_id,
            transaction_id=transaction.get("id"),
            transaction_status=(data.get("order") or {}).get("status") or transaction.get("status"),
        )
        logger.info(
            f"[gateway] {body.get('apiOperation')} order={result.order_id} result={result.result} code={result.gateway_code}"
        )
        return result

    def _token_operation(self, operation: str, token: str, amount: Decimal, currency: str) -> ChargeResult:
        order_id = generate_order_id()
        body = {
            "apiOperation": operation,
            "order": {"amount": format_amount(amount), "currency": currency},
            "sourceOfFunds": {"type": "CARD", "token": token},
        }
        return self._put(self._transaction_path(order_id, "1"), body, order_id)

    def charge(self, token: str, amount: Decimal, currency: str) -> ChargeResult:
        """PAY with a stored token."""
        return self._token_operation("PAY", token, amount, currency)

    def authorize(self, token: str, amount: Decimal, currency: str) -> ChargeResult:
        return self._token_operation("AUTHORIZE", token, amount, currency)

    def capture(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        body = {
            "apiOperation": "CAPTURE",
            "transaction": {"amount": format_amount(amount), "currency": currency},
        }
        return self._put(self._transaction_path(order_id, "2"), body, order_id)

    def void(self, order_id: str) -> ChargeResult:
        body = {
            "apiOperation": "VOID",
            "transaction": {"targetTransactionId": "1"},
        }
        return self._put(self._transaction_path(order_id, "2"), body, order_id)

    def update_authorization(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        body = {
            "apiOperation": "UPDATE_AUTHORIZATION",
            "transaction": {"amount": format_amount(amount), "currency": currency},
        }
        return self._put(self._transaction_path(order_id, "2"), body, order_id)

    def refund(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        # Each refund needs its own transaction id on the order
        transaction_id = f"refund-{random.randint(1, 999_999)}"
        body = {
            "apiOperation": "REFUND",
            "transaction": {"amount": format_amount(amount), "currency": currency},
        }
        return self._put(self._transaction_path(order_id, transaction_id), body, order_id)
