"""
M-Pesa STK callback decoding.

Turns the raw webhook body into a PaymentResult. Anything that does not
decode into a well-formed result raises CallbackDecodeError, which the
endpoint answers with a 400 rejection instead of an acknowledgement.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

# Daraja stamps TransactionDate in East Africa Time
EAT = timezone(timedelta(hours=3))

REQUIRED_SUCCESS_ITEMS = ("Amount", "MpesaReceiptNumber")


class CallbackDecodeError(Exception):
    """Webhook body is not a well-formed STK callback."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CallbackItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name")
    value: Union[int, float, str, None] = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    def get(self, name: str):
        for item in self.items:
            if item.name == name:
                return item.value
        return None


class StkCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @model_validator(mode="after")
    def _success_carries_payment_details(self):
        if self.result_code == 0:
            if self.metadata is None:
                raise ValueError("successful callback without CallbackMetadata")
            for name in REQUIRED_SUCCESS_ITEMS:
                if self.metadata.get(name) is None:
                    raise ValueError(f"successful callback without {name}")
        return self


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class CallbackEnvelope(BaseModel):
    Body: CallbackBody


@dataclass(frozen=True)
class PaymentResult:
    """Decoded outcome of one push payment."""
    correlation_id: str
    result_code: int
    result_desc: str = ""
    merchant_request_id: Optional[str] = None
    confirmed_amount: Optional[float] = None
    receipt: Optional[str] = None
    payer_phone: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


def parse_transaction_date(value) -> Optional[datetime]:
    """YYYYMMDDHHMMSS in EAT -> aware UTC datetime. Unparseable values give None."""
    if value is None:
        return None
    text = str(value)
    if isinstance(value, float):
        text = str(int(value))
    try:
        local = datetime.strptime(text, "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return local.replace(tzinfo=EAT).astimezone(timezone.utc)


def _as_amount(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise CallbackDecodeError(f"invalid Amount: {value!r}")


def _as_phone(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        value = int(value)
    return str(value)


def decode_callback(raw: bytes) -> PaymentResult:
    """
    Decode a raw STK callback body.

    Raises:
        CallbackDecodeError: invalid JSON, missing stkCallback, missing
            CheckoutRequestID or ResultCode, or a success without Amount
            and MpesaReceiptNumber.
    """
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise CallbackDecodeError("Invalid JSON")

    if not isinstance(data, dict):
        raise CallbackDecodeError("Invalid callback format")

    try:
        envelope = CallbackEnvelope.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        reason = first.get("msg", "invalid callback")
        raise CallbackDecodeError(f"Invalid callback format: {location} {reason}".strip())

    callback = envelope.Body.stkCallback
    metadata = callback.metadata

    confirmed_amount = None
    receipt = None
    payer_phone = None
    paid_at = None
    if metadata is not None:
        confirmed_amount = _as_amount(metadata.get("Amount"))
        receipt_value = metadata.get("MpesaReceiptNumber")
        receipt = str(receipt_value) if receipt_value is not None else None
        payer_phone = _as_phone(metadata.get("PhoneNumber"))
        paid_at = parse_transaction_date(metadata.get("TransactionDate"))

    return PaymentResult(
        correlation_id=callback.checkout_request_id,
        result_code=callback.result_code,
        result_desc=callback.result_desc or "",
        merchant_request_id=callback.merchant_request_id,
        confirmed_amount=confirmed_amount,
        receipt=receipt,
        payer_phone=payer_phone,
        paid_at=paid_at,
    )
