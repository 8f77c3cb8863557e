"""
Input validation for checkout customer data and mobile money phone numbers.
"""
import re

from cartpay.exceptions import ValidationError
from cartpay.models import CustomerInfo, PaymentMethod

REQUIRED_CUSTOMER_FIELDS = ("name", "phone", "address")

# 254 country code followed by a 7xx or 1xx subscriber number
SUBSCRIBER_NUMBER_RE = re.compile(r"^254[17]\d{8}$")


def normalize_msisdn(phone: str) -> str:
    """Normalize a Kenyan phone number to the 2547XXXXXXXX form"""
    formatted = re.sub(r"[\s-]+", "", phone.strip())
    if formatted.startswith("+"):
        formatted = formatted[1:]
    if formatted.startswith("0"):
        formatted = "254" + formatted[1:]
    if not formatted.startswith("254"):
        formatted = "254" + formatted
    return formatted


def is_valid_msisdn(phone: str) -> bool:
    return bool(SUBSCRIBER_NUMBER_RE.match(normalize_msisdn(phone)))


def require_valid_msisdn(phone: str) -> str:
    normalized = normalize_msisdn(phone)
    if not SUBSCRIBER_NUMBER_RE.match(normalized):
        raise ValidationError(
            f"Phone number {phone!r} is not a valid mobile money number (e.g. 0712345678)"
        )
    return normalized


def validate_customer(customer: CustomerInfo, payment_method: PaymentMethod) -> CustomerInfo:
    """
    Check required customer fields and, for mobile money, the phone shape.

    Returns:
        CustomerInfo with fields stripped and, for mobile money, the phone
        normalized to the gateway format.

    Raises:
        ValidationError: If a required field is blank or the phone is malformed
    """
    missing = [f for f in REQUIRED_CUSTOMER_FIELDS if not getattr(customer, f, "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    phone = customer.phone.strip()
    if payment_method.is_async:
        phone = require_valid_msisdn(phone)

    email = customer.email.strip() if customer.email else None
    return CustomerInfo(
        name=customer.name.strip(),
        phone=phone,
        email=email or None,
        address=customer.address.strip(),
    )
