"""Normalization utilities for phone numbers.

This module is the single source of truth for phone handling:
- ``normalize_phone`` produces the canonical form used for deduplication
- ``format_phone`` renders a number for display (using Google's libphonenumber)

Normalization happens at the point of ingestion (ticket intake, merge) so that
the store and the dedup index only ever see canonical numbers.
"""

import logging
import re

logger = logging.getLogger(__name__)

COUNTRY_CODE = "84"
DEFAULT_REGION = "VN"

_SEPARATORS = re.compile(r"[\s.\-()/]")


def normalize_phone(phone: str | None) -> str:
    """Normalize a Vietnamese phone number to its canonical comparison form.

    Strips separators (dots, dashes, spaces, parentheses) and a leading ``+``,
    then rewrites a leading country code ``84`` to a single ``0``.

    Examples::

        "0912.345.678"  -> "0912345678"
        "+84912345678"  -> "0912345678"
        "84 912 345 678" -> "0912345678"

    Args:
        phone: Raw phone number string

    Returns:
        Canonical phone string, or empty string if no input
    """
    if not phone:
        return ""

    cleaned = _SEPARATORS.sub("", phone.strip())
    cleaned = cleaned.lstrip("+")

    if cleaned.startswith(COUNTRY_CODE):
        cleaned = "0" + cleaned[len(COUNTRY_CODE) :]

    return cleaned


def format_phone(phone: str | None) -> str | None:
    """Format a phone number for display using libphonenumber.

    Use this when rendering numbers in notifications, never for comparison.

    Args:
        phone: Raw or canonical phone number string

    Returns:
        National format (e.g. "091 234 56 78"), the stripped input if it can't
        be parsed, or None if empty
    """
    if not phone:
        return None

    import phonenumbers

    try:
        parsed = phonenumbers.parse(phone, DEFAULT_REGION)

        if not phonenumbers.is_possible_number(parsed):
            return phone.strip()

        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.NATIONAL)
    except phonenumbers.NumberParseException:
        logger.debug("Could not parse phone number for display: %s", phone)
        return phone.strip()
