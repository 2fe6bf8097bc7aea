"""
Public tracking codes for delivery requests: PREFIX-<base36 ms clock>-<8 random base36>.
Issued once at creation; the unique index on tracking_code catches the
(negligible) collision case and the caller regenerates once.
"""
import secrets
import string
import time

from rxdispatch.config import settings

_ALPHABET = string.digits + string.ascii_uppercase
RANDOM_LENGTH = 8


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate(prefix: str | None = None) -> str:
    stamp = _base36(time.time_ns() // 1_000_000)
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(RANDOM_LENGTH))
    return f"{prefix or settings.tracking_code_prefix}-{stamp}-{random_part}".upper()


def normalize(code: str) -> str:
    return code.strip().upper()
