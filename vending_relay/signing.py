"""PayWay payload construction.

The gateway recomputes the hash over the same concatenation, so field order
and encoding below must not change.
"""
import base64
import hashlib
import hmac
import json
from typing import Any, List, Optional

CURRENCY = "KHR"
FIRST_NAME = "test"
LAST_NAME = "ABA"
EMAIL = "aba@gmail.com"
PHONE = "+85512345678"
PURCHASE_TYPE = "purchase"
PAYMENT_OPTION = "abapay_khqr"
LIFETIME = 30
QR_IMAGE_TEMPLATE = "template2_color"


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def encode_items(items: Optional[List[Any]]) -> str:
    return b64(json.dumps(items or [], separators=(",", ":"), ensure_ascii=False))


def format_amount(amount) -> str:
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    return str(amount)


def sign(api_key: str, message: str) -> str:
    """HMAC-SHA512 of ``message``, base64 encoded."""
    digest = hmac.new(api_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode("ascii")


def build_charge_payload(
    *,
    api_key: str,
    merchant_id: str,
    tran_id: str,
    req_time: str,
    amount: str,
    items: Optional[List[Any]] = None,
    callback_url: str = "",
    return_params: str = "",
) -> dict:
    items_b64 = encode_items(items)
    callback_b64 = b64(callback_url) if callback_url else ""

    b4hash = (
        req_time
        + merchant_id
        + tran_id
        + amount
        + items_b64
        + FIRST_NAME
        + LAST_NAME
        + EMAIL
        + PHONE
        + PURCHASE_TYPE
        + PAYMENT_OPTION
        + callback_b64
        + CURRENCY
        + return_params
        + str(LIFETIME)
        + QR_IMAGE_TEMPLATE
    )

    return {
        "req_time": req_time,
        "merchant_id": merchant_id,
        "tran_id": tran_id,
        "first_name": FIRST_NAME,
        "last_name": LAST_NAME,
        "email": EMAIL,
        "phone": PHONE,
        "amount": amount,
        "currency": CURRENCY,
        "purchase_type": PURCHASE_TYPE,
        "payment_option": PAYMENT_OPTION,
        "items": items_b64,
        "callback_url": callback_b64,
        "return_params": return_params,
        "lifetime": LIFETIME,
        "qr_image_template": QR_IMAGE_TEMPLATE,
        "hash": sign(api_key, b4hash),
    }


def build_check_payload(*, api_key: str, merchant_id: str, tran_id: str, req_time: str) -> dict:
    return {
        "req_time": req_time,
        "merchant_id": merchant_id,
        "tran_id": tran_id,
        "hash": sign(api_key, req_time + merchant_id + tran_id),
    }
