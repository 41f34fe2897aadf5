"""Shared validation utilities"""

import re
from datetime import time
from typing import Optional

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def parse_clock_time(value) -> Optional[time]:
    """
    Parse an HH:MM or HH:MM:SS string into a time.

    Raises:
        ValueError: If the value is not a valid 24-hour clock time
    """
    if value is None or isinstance(value, time):
        return value

    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM (24-hour)")

    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


def validate_e164_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Ten-digit numbers are assumed to be Indian mobiles (+91).

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    stripped = phone.strip()
    digits = re.sub(r"\D", "", stripped)

    if stripped.startswith("+"):
        if not 8 <= len(digits) <= 15:
            raise ValueError("Phone number must have 8-15 digits in E.164 format")
        return f"+{digits}"

    if len(digits) == 10:
        return f"+91{digits}"
    if len(digits) == 12 and digits.startswith("91"):
        return f"+{digits}"

    raise ValueError("Phone number must be 10 digits or include a country code")


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()
    if not re.match(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", email):
        raise ValueError("Invalid email format")

    return email
