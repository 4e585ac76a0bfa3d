"""
D7 Billing Hash Codec

PayU request signing and response verification.

Outbound requests are signed over
    key|txnid|amount|productinfo|firstname|email|udf1..udf5|||||salt
and gateway responses are verified over the reverse sequence
    salt|status|||||udf5..udf1|email|firstname|productinfo|amount|txnid|key
Both digests are SHA-512 hex. Nothing here performs I/O.
"""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List, Mapping, Optional

from core.exceptions import ValidationError

UDF_FIELDS = ("udf1", "udf2", "udf3", "udf4", "udf5")

# Order matters: these are the signed positions between key and the reserved slots
REQUEST_FIELDS = ("key", "txnid", "amount", "productinfo", "firstname", "email") + UDF_FIELDS

RESERVED_SLOTS = 5

TWO_PLACES = Decimal("0.01")


def format_amount(value: Any) -> str:
    """
    Serialize an amount with exactly two decimals.

    The same string must appear in the signed message and in the order form,
    otherwise the gateway rejects the request.
    """
    if isinstance(value, bool):
        raise ValidationError("Amount must be numeric", field="amount", value=str(value))
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be numeric", field="amount", value=str(value))
    if not amount.is_finite():
        raise ValidationError("Amount must be finite", field="amount", value=str(value))
    return str(amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def request_signing_string(fields: Mapping[str, Any], salt: str) -> str:
    parts: List[str] = []
    for name in REQUEST_FIELDS:
        if name == "amount":
            parts.append(format_amount(fields.get("amount")))
        else:
            parts.append(_text(fields.get(name)))
    parts.extend([""] * RESERVED_SLOTS)
    parts.append(salt)
    return "|".join(parts)


def response_signing_string(fields: Mapping[str, Any], salt: str) -> str:
    amount = fields.get("amount")
    # The gateway hashes its own amount string, so strings pass through untouched
    amount_text = amount if isinstance(amount, str) else format_amount(amount)

    parts = [salt, _text(fields.get("status"))]
    parts.extend([""] * RESERVED_SLOTS)
    parts.extend(_text(fields.get(name)) for name in reversed(UDF_FIELDS))
    parts.extend(
        [
            _text(fields.get("email")),
            _text(fields.get("firstname")),
            _text(fields.get("productinfo")),
            amount_text,
            _text(fields.get("txnid")),
            _text(fields.get("key")),
        ]
    )
    return "|".join(parts)


def _sha512(message: str) -> str:
    return hashlib.sha512(message.encode("utf-8")).hexdigest()


def sign(fields: Mapping[str, Any], salt: str) -> str:
    """Compute the request hash for an outbound order"""
    return _sha512(request_signing_string(fields, salt))


def verify(fields: Mapping[str, Any], salt: str, received_hash: Optional[str]) -> bool:
    """
    Check a gateway response hash in constant time.

    A missing or empty hash never verifies.
    """
    if not received_hash or not isinstance(received_hash, str):
        return False
    expected = _sha512(response_signing_string(fields, salt))
    return hmac.compare_digest(expected.encode("ascii"), received_hash.strip().lower().encode("utf-8"))
