"""Phone number helpers shared by the initiator, ledger and responses."""

import re
from typing import Optional

_SEPARATORS = re.compile(r"[\s\-()]")
_DIGITS = re.compile(r"^\d{9,15}$")


def normalize_phone(phone: str, country_code: str = "254") -> str:
    """
    Convert a phone number to the provider's international format.

    0712345678    -> 254712345678
    +254712345678 -> 254712345678
    254712345678  -> unchanged
    """
    cleaned = _SEPARATORS.sub("", phone or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    elif cleaned.startswith("0") and len(cleaned) == 10:
        cleaned = country_code + cleaned[1:]
    return cleaned


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and bool(_DIGITS.match(phone))


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """First 3 and last 3 digits visible; shorter than 6 characters returned unmasked."""
    if phone is None:
        return None
    if len(phone) < 6:
        return phone
    return phone[:3] + "****" + phone[-3:]
