"""
Payment gateway protocol.

Defines the interface the billing engine charges saved cards through.
This allows swapping gateways without changing business logic.
"""
from typing import Protocol, Optional
from dataclasses import dataclass
from decimal import Decimal


RESULT_SUCCESS = "SUCCESS"
GATEWAY_CODE_APPROVED = "APPROVED"


@dataclass(frozen=True)
class ChargeResult:
    """Gateway response to a charge-like operation."""
    result: str  # SUCCESS, FAILURE, PENDING, ERROR
    gateway_code: str  # APPROVED, DECLINED, INSUFFICIENT_FUNDS, ...
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.result == RESULT_SUCCESS and self.gateway_code == GATEWAY_CODE_APPROVED


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Every operation returns a ChargeResult when the gateway answered (approved
    or not) and raises GatewayError when no usable answer came back.
    """

    def charge(self, token: str, amount: Decimal, currency: str) -> ChargeResult:
        """
        Charge a stored card token immediately (authorize and capture).

        Args:
            token: Gateway token of the saved card
            amount: Amount in major units
            currency: ISO 4217 code

        Raises:
            GatewayError: transport failure, timeout or non-2xx response
        """
        ...

    def authorize(self, token: str, amount: Decimal, currency: str) -> ChargeResult:
        """Hold funds on a stored card token."""
        ...

    def capture(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        """Capture a previous authorization."""
        ...

    def void(self, order_id: str) -> ChargeResult:
        """Release a previous authorization."""
        ...

    def update_authorization(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        """Change the held amount of an authorization."""
        ...

    def refund(self, order_id: str, amount: Decimal, currency: str) -> ChargeResult:
        """Refund a captured order, fully or partially."""
        ...


class GatewayError(Exception):
    """Base exception for gateway transport and API errors."""
    pass


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the configured timeout."""
    pass
