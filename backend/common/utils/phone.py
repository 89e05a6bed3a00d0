"""
Phone number helpers.

Riders are stored and mapped by a normalized ``+<digits>`` form, while the
uChat API identifies subscribers by the bare digits.
"""

import re

from django.conf import settings

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str, country_code: str = None) -> str:
    """
    Normalize a phone number to ``+<digits>``.

    A leading trunk ``0`` is replaced with the default country code
    (``DEFAULT_PHONE_COUNTRY_CODE``, UAE by default).
    """
    if phone is None:
        return ""
    digits = _NON_DIGITS.sub("", str(phone))
    if not digits:
        return ""
    if digits.startswith("00"):
        digits = digits[2:]
    elif digits.startswith("0"):
        code = country_code or getattr(settings, "DEFAULT_PHONE_COUNTRY_CODE", "971")
        digits = f"{code}{digits[1:]}"
    return f"+{digits}"


def strip_plus(phone: str) -> str:
    """Return the normalized number without its leading ``+``."""
    return normalize_phone(phone).lstrip("+")
