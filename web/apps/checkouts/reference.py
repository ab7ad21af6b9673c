"""Checkout reference numbers.

References are human-facing tokens of the form ``CHK-<timestamp>-<suffix>``
where the timestamp is the UTC creation second (``YYYYMMDDhhmmss``) and the
suffix is three random bytes, hex-encoded and uppercased. They are not
cryptographic identifiers: uniqueness is enforced by the database constraint
on ``Checkout.reference_number``.
"""

import re
import secrets
from datetime import datetime, timezone

PREFIX = "CHK"
REFERENCE_RE = re.compile(r"^CHK-[0-9]{14}-[A-F0-9]{6}$")


def generate(now: datetime | None = None) -> str:
    """Build a new reference number.

    Args:
        now: Optional timestamp to encode (defaults to the current UTC time).

    Returns:
        str: A token such as ``CHK-20251009143025-A7B3F9``.
    """
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = secrets.token_hex(3).upper()
    return f"{PREFIX}-{stamp}-{suffix}"


def is_valid(value: str) -> bool:
    """Return True when ``value`` matches the reference number pattern."""
    return isinstance(value, str) and REFERENCE_RE.fullmatch(value) is not None
