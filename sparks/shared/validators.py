"""Shared validation utilities"""

import re
from typing import Optional

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_lk_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a Sri Lankan phone number to E.164 format.

    Accepts 0771234567, 771234567, 94771234567 and +94 77 123 4567.

    Returns:
        Normalized phone number (+94XXXXXXXXX)

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)

    if digits.startswith("94") and len(digits) == 11:
        digits = digits[2:]
    elif digits.startswith("0") and len(digits) == 10:
        digits = digits[1:]

    if len(digits) != 9:
        raise ValueError("Phone number must be a valid Sri Lankan number")

    return f"+94{digits}"


def validate_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return email
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValueError("Invalid email address")
    return email
