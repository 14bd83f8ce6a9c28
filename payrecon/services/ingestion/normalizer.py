"""Normalizer utility functions for uploaded transaction data.

These functions provide a single place to handle the messy reality of
merchant exports and agent bill lists: inconsistent date formats, payment
method spellings, point-of-sale names typed by hand, and transaction codes
that contain characters the keyed store cannot use in a path.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Optional

from payrecon.core.logging import get_logger
from payrecon.core.store import sanitize_key

logger = get_logger(__name__)

QR_VNPAY = "QR 1 (VNPay)"
QR_BANK = "QR 2 (App Bank)"
SOFPOS = "Sofpos"
POS = "POS"

PAYMENT_METHODS: tuple[str, ...] = (QR_VNPAY, QR_BANK, SOFPOS, POS)

# Maps loose spellings seen in exports to the canonical method label
_METHOD_ALIASES: dict[str, str] = {
    "qr 1 (vnpay)": QR_VNPAY,
    "qr1": QR_VNPAY,
    "qr 1": QR_VNPAY,
    "vnpay": QR_VNPAY,
    "qr vnpay": QR_VNPAY,
    "qr 2 (app bank)": QR_BANK,
    "qr2": QR_BANK,
    "qr 2": QR_BANK,
    "app bank": QR_BANK,
    "qr app bank": QR_BANK,
    "sofpos": SOFPOS,
    "softpos": SOFPOS,
    "pos": POS,
}

# Date formats we accept, ordered from most specific to least
_DATE_FORMATS: list[str] = [
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y",
]

_WHITESPACE = re.compile(r"\s+")


def normalize_transaction_code(code: Any) -> str:
    """Strip surrounding whitespace from a transaction code.

    Codes are compared exactly after stripping; case is preserved because
    payment channels issue case-sensitive approval codes.
    """
    if code is None:
        return ""
    return str(code).strip()


def sanitize_transaction_code(code: str) -> str:
    """Turn a transaction code into a key usable as one store path segment."""
    return sanitize_key(normalize_transaction_code(code))


def sanitize_raw_data(raw: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Replace path-delimiter characters in the keys of an uploaded row."""
    if not raw:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in raw.items():
        cleaned[sanitize_key(str(key).strip())] = value
    return cleaned


def normalize_payment_method(method: Optional[str], default: Optional[str] = None) -> Optional[str]:
    """Map a loose payment-method label to its canonical form.

    Unknown labels are returned stripped rather than rejected, since an
    agent's rate maps may be keyed by a label we have not seen before.
    """
    if method is None or not str(method).strip():
        return default
    stripped = _WHITESPACE.sub(" ", str(method).strip())
    canonical = _METHOD_ALIASES.get(stripped.lower())
    if canonical is None:
        logger.debug("Unknown payment method %r kept as-is", method)
        return stripped
    return canonical


def point_of_sale_key(name: Optional[str]) -> str:
    """Comparison key for point-of-sale names: case and spacing insensitive."""
    if not name:
        return ""
    return _WHITESPACE.sub("", str(name)).upper()


def normalize_date(value: Any) -> Optional[date]:
    """Try multiple date formats and return a calendar date.

    Args:
        value: A ``date``, ``datetime`` or raw string from the upload.

    Returns:
        Parsed date, or None if all formats fail.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    stripped = str(value).strip()
    if not stripped:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(stripped, fmt).date()
        except ValueError:
            continue
    # ISO strings with offsets ("2024-05-01T10:00:00+07:00", "...Z")
    try:
        return datetime.fromisoformat(stripped.replace("Z", "+00:00")).date()
    except ValueError:
        logger.warning("Could not parse date: %s", value)
        return None
