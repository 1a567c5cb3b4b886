"""
M-Pesa (Daraja) STK push initiator.

Implements the PaymentInitiator protocol over httpx.
Handles OAuth token caching, request signing and response validation;
payment confirmation arrives later on the callback endpoint.
"""
import base64
import logging
import time
from datetime import datetime
from typing import Callable, Optional

import httpx

from directory_api.core.config import settings
from directory_api.features.payments.phone import normalize_phone, mask_phone
from directory_api.features.payments.provider import (
    PaymentInitiation,
    PaymentInitiatorError,
)


logger = logging.getLogger("directory.mpesa")

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}
TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Daraja tokens live 3599s; refresh a minute early
TOKEN_TTL_SECONDS = 3500


class MpesaInitiator:
    """Daraja implementation of PaymentInitiator."""

    def __init__(
        self,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        shortcode: Optional[str] = None,
        passkey: Optional[str] = None,
        callback_url: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the M-Pesa initiator.

        Args default to the MPESA_* settings. `client` lets callers share a
        connection pool or inject a transport.
        """
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET
        self.shortcode = shortcode or settings.MPESA_SHORTCODE
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.callback_url = callback_url or settings.MPESA_CALLBACK_URL
        self.environment = (environment or settings.MPESA_ENVIRONMENT or "sandbox").lower()
        self.country_code = settings.MPESA_COUNTRY_CODE

        if self.environment not in BASE_URLS:
            raise PaymentInitiatorError(f"Unknown MPESA_ENVIRONMENT: {self.environment}")

        self._client = client or httpx.Client(timeout=timeout or settings.MPESA_TIMEOUT_SECONDS)
        self._clock = clock
        self._now = now
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.environment]

    def _require_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("MPESA_CONSUMER_KEY", self.consumer_key),
                ("MPESA_CONSUMER_SECRET", self.consumer_secret),
                ("MPESA_SHORTCODE", self.shortcode),
                ("MPESA_PASSKEY", self.passkey),
                ("MPESA_CALLBACK_URL", self.callback_url),
            )
            if not value
        ]
        if missing:
            raise PaymentInitiatorError(f"M-Pesa not configured: missing {', '.join(missing)}")

    def get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry."""
        if self._access_token and self._clock() < self._token_expires_at:
            return self._access_token

        try:
            response = self._client.get(
                self.base_url + TOKEN_PATH,
                auth=(self.consumer_key or "", self.consumer_secret or ""),
            )
        except httpx.TimeoutException as e:
            raise PaymentInitiatorError(f"M-Pesa token request timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise PaymentInitiatorError(f"Failed to get access token: {e}", retryable=True)

        if response.status_code != 200:
            raise PaymentInitiatorError(
                f"Failed to get access token (status {response.status_code})",
                retryable=response.status_code >= 500,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise PaymentInitiatorError("Unexpected M-Pesa token response")

        token = payload.get("access_token")
        if not token:
            raise PaymentInitiatorError("M-Pesa returned empty access token")

        self._access_token = token
        self._token_expires_at = self._clock() + TOKEN_TTL_SECONDS
        logger.info("mpesa.token.refreshed")
        return token

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def build_stk_request(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> dict:
        """STK push body; timestamp format is YYYYMMDDHHMMSS."""
        formatted_phone = normalize_phone(phone, self.country_code)
        timestamp = self._now().strftime("%Y%m%d%H%M%S")
        return {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": formatted_phone,
            "PartyB": self.shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

    def start(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> PaymentInitiation:
        """Send an STK push prompt to the payer's phone."""
        self._require_credentials()
        token = self.get_access_token()
        body = self.build_stk_request(phone, amount, account_reference, description)

        logger.info(
            "mpesa.stk_push.start",
            extra={"phone": mask_phone(body["PhoneNumber"]), "amount": body["Amount"], "reference": account_reference},
        )

        try:
            response = self._client.post(
                self.base_url + STK_PUSH_PATH,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise PaymentInitiatorError(f"M-Pesa request timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise PaymentInitiatorError(f"Failed to send request: {e}", retryable=True)

        if response.status_code == 401:
            # Token revoked early; next attempt re-authenticates
            self._access_token = None

        try:
            payload = response.json()
        except ValueError:
            raise PaymentInitiatorError(
                f"Failed to decode M-Pesa response (status {response.status_code})",
                retryable=response.status_code >= 500,
            )
        if not isinstance(payload, dict):
            raise PaymentInitiatorError(
                f"Unexpected M-Pesa response (status {response.status_code})",
                retryable=response.status_code >= 500,
            )

        if response.status_code != 200:
            raise PaymentInitiatorError(
                "MPESA API error (Status {}): {} (RequestID: {})".format(
                    response.status_code,
                    payload.get("errorMessage", ""),
                    payload.get("requestId", ""),
                ),
                retryable=response.status_code >= 500,
            )

        if str(payload.get("ResponseCode")) != "0":
            raise PaymentInitiatorError(
                f"MPESA rejected request: {payload.get('ResponseDescription', 'unknown error')}"
            )

        checkout_id = payload.get("CheckoutRequestID")
        if not checkout_id:
            raise PaymentInitiatorError("Invalid MPESA response: missing CheckoutRequestID")

        logger.info("mpesa.stk_push.accepted", extra={"reference": account_reference})
        return PaymentInitiation(
            correlation_id=checkout_id,
            merchant_request_id=payload.get("MerchantRequestID"),
            provider_message=payload.get("CustomerMessage"),
        )

    def close(self) -> None:
        self._client.close()
