"""Contact details collected before entering a prize draw."""

from __future__ import annotations

from dataclasses import dataclass, replace
import re

from django.core.exceptions import ValidationError
from django.core.validators import validate_email

from .exceptions import ContactValidationFailure

REQUIRED_MESSAGE = "This field is required."
WHATSAPP_MIN_DIGITS = 10
WHATSAPP_MAX_DIGITS = 11

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ContactDetails:
    whatsapp: str = ""
    email: str = ""
    sensitive_consent: bool = False


def whatsapp_digits(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def format_whatsapp(value: str) -> str:
    """Format a Brazilian phone number as ``(DD) NNNNN-NNNN``."""
    digits = whatsapp_digits(value)[:WHATSAPP_MAX_DIGITS]
    if len(digits) <= 2:
        return f"({digits}" if digits else ""
    if len(digits) <= 6:
        return f"({digits[:2]}) {digits[2:]}"
    if len(digits) <= 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"


def validate_contact(contact: ContactDetails) -> ContactDetails:
    """Check WhatsApp and e-mail, returning the normalised contact.

    Raises:
        ContactValidationFailure: with a message per invalid field.
    """
    errors: dict[str, str] = {}

    whatsapp = (contact.whatsapp or "").strip()
    digits = whatsapp_digits(whatsapp)
    if not whatsapp:
        errors["whatsapp"] = REQUIRED_MESSAGE
    elif not WHATSAPP_MIN_DIGITS <= len(digits) <= WHATSAPP_MAX_DIGITS:
        errors["whatsapp"] = "Invalid number (10 or 11 digits including area code)."

    email = (contact.email or "").strip()
    if not email:
        errors["email"] = REQUIRED_MESSAGE
    else:
        try:
            validate_email(email)
        except ValidationError:
            errors["email"] = "Invalid e-mail address."

    if errors:
        raise ContactValidationFailure(errors)
    return replace(contact, whatsapp=format_whatsapp(digits), email=email.lower())
