"""Shared validation utilities for contact details and locations"""

import re
from typing import Optional

NON_DIGITS = re.compile(r"\D")
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def normalize_zipcode(zipcode: Optional[str]) -> Optional[str]:
    """
    Normalize a US ZIP code to its 5-digit form.

    Accepts "12345", "12345-6789" and "123456789". Returns None when the
    value cannot be a ZIP code.
    """
    if not zipcode:
        return None

    digits = NON_DIGITS.sub("", str(zipcode))
    return digits[:5] if len(digits) in (5, 9) else None


def validate_us_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a US phone number to E.164 (+1XXXXXXXXXX).

    Raises:
        ValueError: If the number does not have 10 digits (after an optional leading 1)
    """
    if not phone:
        return phone

    digits = NON_DIGITS.sub("", phone)
    if len(digits) == 11 and digits[0] == "1":
        digits = digits[1:]
    if len(digits) != 10:
        raise ValueError("Phone number must be 10 digits for US numbers")
    return "+1" + digits


def validate_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and check an email address; raises ValueError if malformed"""
    if not email:
        return email

    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValueError("Invalid email format")
    return email


def is_email_address(recipient: str) -> bool:
    return "@" in (recipient or "")
