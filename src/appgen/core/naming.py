"""Project id derivation."""

from __future__ import annotations

import re
import time

SUFFIX_LENGTH = 6
MAX_SLUG_LENGTH = 40
FALLBACK_SLUG = "project"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: str | None, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lowercase, hyphen-separated slug cut on a word boundary."""
    slug = _NON_ALNUM.sub("-", (text or "").lower()).strip("-")
    if len(slug) > max_length:
        cut = slug[:max_length]
        slug = cut.rsplit("-", 1)[0] if "-" in cut else cut
    return slug or FALLBACK_SLUG


def to_base36(value: int) -> str:
    if value < 0:
        msg = "base36 value must be non-negative"
        raise ValueError(msg)
    digits: list[str] = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


def time_suffix(offset: int = 0) -> str:
    """Six base36 characters from the microsecond clock."""
    micros = time.time_ns() // 1000 + offset
    return to_base36(micros % 36**SUFFIX_LENGTH).rjust(SUFFIX_LENGTH, "0")


def make_project_id(description: str | None, *, offset: int = 0) -> str:
    return f"{slugify(description)}-{time_suffix(offset)}"
