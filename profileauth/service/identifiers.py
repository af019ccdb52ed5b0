from __future__ import annotations

import re
import string
from typing import Callable

from profileauth.logging import get_logger
from profileauth.service.errors import IdGenerationError, ValidationError
from profileauth.service.sources import RandomSource

logger = get_logger(__name__)

_USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.]{2,29}$")
_PUBLIC_ID_LETTERS = string.ascii_uppercase
_PUBLIC_ID_ALPHANUMERIC = string.ascii_uppercase + string.digits


def normalize_email(email: str | None) -> str:
    raw = (email or "").strip().lower()
    if not raw or "@" not in raw or "." not in raw.split("@")[-1]:
        raise ValidationError("invalid email address", detail={"field": "email"})
    return raw


def normalize_phone(phone: str | None, country_code: str | None = None) -> str:
    """Return ``phone`` in E.164 form.

    A bare national number needs ``country_code``; anything starting with ``+``
    (or already carrying the country prefix) is taken as international.
    """
    raw = (phone or "").strip()
    if not raw:
        raise ValidationError("invalid phone number", detail={"field": "phone_number"})
    digits = "".join(ch for ch in raw if ch.isdigit())
    if not raw.startswith("+") and country_code:
        cc = "".join(ch for ch in country_code if ch.isdigit())
        digits = cc + digits.lstrip("0")
    if not 8 <= len(digits) <= 15:
        raise ValidationError("invalid phone number", detail={"field": "phone_number"})
    return "+" + digits


def normalize_username(username: str | None) -> str:
    raw = (username or "").strip().lower()
    if not _USERNAME_RE.match(raw):
        raise ValidationError(
            "username must be 3-30 characters of letters, digits, '_' or '.'",
            detail={"field": "username"},
        )
    return raw


def normalize_target(target: str) -> str:
    """Normalize an OTP target that is either an email address or a phone number."""
    if "@" in (target or ""):
        return normalize_email(target)
    return normalize_phone(target)


def generate_public_id(
    random_source: RandomSource,
    exists: Callable[[str], bool],
    *,
    max_attempts: int = 10,
) -> str:
    """Generate an unused public id: one letter followed by seven letters or digits.

    Raises :class:`IdGenerationError` once ``max_attempts`` candidates collided.
    """
    for attempt in range(1, max_attempts + 1):
        candidate = random_source.choice(_PUBLIC_ID_LETTERS) + "".join(
            random_source.choice(_PUBLIC_ID_ALPHANUMERIC) for _ in range(7)
        )
        if not exists(candidate):
            return candidate
        logger.info("public_id_collision", attempt=attempt)
    logger.error("public_id_generation_exhausted", attempts=max_attempts)
    raise IdGenerationError(
        "failed to generate a unique public id",
        detail={"attempts": max_attempts},
    )
