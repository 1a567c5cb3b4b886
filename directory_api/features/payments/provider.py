"""
Payment initiator protocol.

Defines the interface the activation flow uses to start a push payment.
Completion is reported later through the provider callback, never by
the initiator itself.
"""
from typing import Protocol, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class PaymentInitiation:
    """Accepted push-payment request."""
    correlation_id: str  # CheckoutRequestID for M-Pesa
    merchant_request_id: Optional[str] = None
    provider_message: Optional[str] = None


class PaymentInitiator(Protocol):
    """
    Protocol for push-payment initiators.

    Implementations must:
    - Normalize the phone number to the provider's format
    - Return a correlation id the callback will carry
    - Raise PaymentInitiatorError on any failure (transport or rejection)
    """

    def start(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> PaymentInitiation:
        """
        Ask the provider to prompt the payer's device.

        Args:
            phone: Payer phone (local or international format)
            amount: Whole currency units
            account_reference: Reference shown to payer, e.g. SUB-<id>
            description: Transaction description

        Returns:
            PaymentInitiation with the correlation id

        Raises:
            PaymentInitiatorError: If the request could not be started
        """
        ...


class PaymentInitiatorError(Exception):
    """Base exception for payment initiator failures."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
