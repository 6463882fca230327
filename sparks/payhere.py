"""
PayHere Gateway Module

Implements the PayHere checkout/notification contract used by session payments
and donations:
- Checkout hash generation for the hosted payment page
- MD5 double-hash verification of server-to-server notifications
- Status code and payment method normalisation
- Order ID generation

Signature scheme (defined by PayHere):
    hash   = MD5(merchant_id + order_id + amount + currency + MD5(secret)).upper()
    md5sig = MD5(merchant_id + order_id + amount + currency + status_code + MD5(secret)).upper()
"""

import hashlib
import hmac
import logging
import secrets
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from fastapi import Request
from pydantic import BaseModel

from .config import APP_URL, PAYHERE_CURRENCY, PAYHERE_MERCHANT_ID, PAYHERE_MERCHANT_SECRET, PAYHERE_MODE

logger = logging.getLogger(__name__)

SANDBOX_CHECKOUT_URL = "https://sandbox.payhere.lk/pay/checkout"
LIVE_CHECKOUT_URL = "https://www.payhere.lk/pay/checkout"

STATUS_SUCCESS = "2"
STATUS_PENDING = "0"
STATUS_CANCELLED = "-1"
STATUS_FAILED = "-2"
STATUS_CHARGEDBACK = "-3"

PAYMENT_STATUS_BY_CODE = {
    STATUS_SUCCESS: "COMPLETED",
    STATUS_PENDING: "PENDING",
    STATUS_CANCELLED: "CANCELLED",
    STATUS_FAILED: "FAILED",
    STATUS_CHARGEDBACK: "CHARGEDBACK",
}

# Donations have no CHARGEDBACK state; a chargeback is a refund from the donor's side
DONATION_STATUS_BY_CODE = {
    STATUS_SUCCESS: "COMPLETED",
    STATUS_PENDING: "PENDING",
    STATUS_CANCELLED: "CANCELLED",
    STATUS_FAILED: "FAILED",
    STATUS_CHARGEDBACK: "REFUNDED",
}

STATUS_MESSAGES = {
    STATUS_SUCCESS: "Success",
    STATUS_PENDING: "Pending",
    STATUS_CANCELLED: "Cancelled",
    STATUS_FAILED: "Failed",
    STATUS_CHARGEDBACK: "Chargedback",
}

METHOD_MAP = {
    "VISA": "VISA",
    "MASTER": "MASTERCARD",
    "AMEX": "AMEX",
    "eZ Cash": "HELAPAY",
    "Genie": "HELAPAY",
    "BANK": "BANK_TRANSFER",
}

REQUIRED_NOTIFICATION_FIELDS = ("merchant_id", "order_id", "payhere_amount", "status_code", "md5sig")


class PayHereNotification(BaseModel):
    """Form fields PayHere posts to the notify_url"""

    merchant_id: str = ""
    order_id: str = ""
    payment_id: str = ""
    payhere_amount: str = ""
    payhere_currency: str = ""
    status_code: str = ""
    md5sig: str = ""
    status_message: str = ""
    method: str = ""
    card_holder_name: Optional[str] = None
    card_no: Optional[str] = None
    card_expiry: Optional[str] = None
    custom_1: Optional[str] = None
    custom_2: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_NOTIFICATION_FIELDS if not getattr(self, name)]


async def parse_notification(request: Request) -> PayHereNotification:
    """Read the form-encoded notification body; empty values become None for optional card fields"""
    form = await request.form()
    values = {key: str(value).strip() for key, value in form.items()}
    for optional in ("card_holder_name", "card_no", "card_expiry", "custom_1", "custom_2"):
        if not values.get(optional):
            values.pop(optional, None)
    return PayHereNotification(**{k: v for k, v in values.items() if k in PayHereNotification.model_fields})


def md5_upper(value: str) -> str:
    """Uppercase hex MD5 digest, the form PayHere uses everywhere"""
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()  # noqa: S324 - gateway-defined scheme


def format_amount(amount: Union[str, float, int, Decimal]) -> str:
    """Format an amount with exactly two decimal places ("1500" -> "1500.00")"""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def generate_checkout_hash(
    merchant_id: str,
    order_id: str,
    amount: Union[str, float, int, Decimal],
    currency: str,
    merchant_secret: str,
) -> str:
    """Hash sent with the checkout form so PayHere can authenticate the request"""
    hash_string = merchant_id + order_id + format_amount(amount) + currency + md5_upper(merchant_secret)
    return md5_upper(hash_string)


def compute_notification_signature(notification: PayHereNotification, merchant_secret: str) -> str:
    hash_string = (
        notification.merchant_id
        + notification.order_id
        + format_amount(notification.payhere_amount)
        + notification.payhere_currency
        + notification.status_code
        + md5_upper(merchant_secret)
    )
    return md5_upper(hash_string)


def verify_notification_signature(notification: PayHereNotification, merchant_secret: str) -> bool:
    """
    Verify the md5sig of a PayHere notification.
    Uses constant-time comparison; a malformed amount is treated as a bad signature.
    """
    if not notification.md5sig or not merchant_secret:
        return False

    try:
        expected = compute_notification_signature(notification, merchant_secret)
    except ValueError:
        logger.warning(f"🚫 Unparseable amount in PayHere notification: {notification.payhere_amount!r}")
        return False

    received = notification.md5sig.strip().upper()
    if hmac.compare_digest(expected, received):
        return True

    logger.warning(
        f"⚠️ PayHere signature mismatch for order {notification.order_id} - "
        f"Expected: {expected[:8]}..., Got: {received[:8]}..."
    )
    return False


def map_payment_status(status_code: str) -> str:
    return PAYMENT_STATUS_BY_CODE.get(status_code, "UNKNOWN")


def map_donation_status(status_code: str) -> str:
    return DONATION_STATUS_BY_CODE.get(status_code, "FAILED")


def get_status_message(status_code: str) -> str:
    return STATUS_MESSAGES.get(status_code, "Unknown")


def parse_payment_method(method: Optional[str]) -> str:
    """Normalise PayHere's method label (VISA, MASTER, eZ Cash, ...)"""
    if not method:
        return "CARD"
    return METHOD_MAP.get(method, method.upper())


def generate_session_order_id() -> str:
    return f"ORDER_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def generate_donation_order_id() -> str:
    return f"DONATION_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def get_checkout_url(mode: Optional[str] = None) -> str:
    return LIVE_CHECKOUT_URL if (mode or PAYHERE_MODE) == "live" else SANDBOX_CHECKOUT_URL


def split_name(full_name: Optional[str]) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def build_checkout_fields(
    order_id: str,
    amount: Union[float, Decimal],
    items: str,
    first_name: str,
    last_name: str,
    email: str,
    return_path: str,
    cancel_path: str,
    notify_path: str,
    phone: str = "",
    custom_1: Optional[str] = None,
    custom_2: Optional[str] = None,
    currency: str = PAYHERE_CURRENCY,
) -> dict:
    """
    Build the hidden form fields for the PayHere hosted checkout.
    Raises RuntimeError when merchant credentials are missing.
    """
    if not PAYHERE_MERCHANT_ID or not PAYHERE_MERCHANT_SECRET:
        raise RuntimeError("PayHere credentials not configured")

    fields = {
        "merchant_id": PAYHERE_MERCHANT_ID,
        "return_url": f"{APP_URL}{return_path}",
        "cancel_url": f"{APP_URL}{cancel_path}",
        "notify_url": f"{APP_URL}{notify_path}",
        "order_id": order_id,
        "items": items,
        "currency": currency,
        "amount": format_amount(amount),
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "phone": phone,
        "address": "",
        "city": "Colombo",
        "country": "Sri Lanka",
        "hash": generate_checkout_hash(PAYHERE_MERCHANT_ID, order_id, amount, currency, PAYHERE_MERCHANT_SECRET),
    }
    if custom_1 is not None:
        fields["custom_1"] = custom_1
    if custom_2 is not None:
        fields["custom_2"] = custom_2
    return fields


def check_notification(notification: PayHereNotification, merchant_id: str, merchant_secret: str) -> Optional[str]:
    """
    Run the validation chain shared by every notify endpoint.
    Returns the rejection reason, or None when the notification is authentic.
    """
    missing = notification.missing_fields()
    if missing:
        logger.error(f"❌ PayHere notification missing fields: {', '.join(missing)}")
        return "Missing required fields"

    if notification.merchant_id != merchant_id:
        logger.error(f"❌ Invalid merchant ID in notification: {notification.merchant_id}")
        return "Invalid merchant ID"

    if not verify_notification_signature(notification, merchant_secret):
        logger.error(f"❌ Invalid PayHere signature for order {notification.order_id}")
        return "Invalid signature"

    return None
