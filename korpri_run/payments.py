"""Midtrans Snap adapter: transaction creation and webhook status mapping."""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

import httpx

from .settings import settings

logger = logging.getLogger(__name__)

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"


class PaymentGatewayError(Exception):
    pass


class InvalidNotification(ValueError):
    pass


def snap_api_url() -> str:
    return PRODUCTION_SNAP_URL if settings.KR_MIDTRANS_IS_PRODUCTION else SANDBOX_SNAP_URL

def snap_js_url() -> str:
    if settings.KR_MIDTRANS_IS_PRODUCTION:
        return "https://app.midtrans.com/snap/snap.js"
    return "https://app.sandbox.midtrans.com/snap/snap.js"


class MidtransClient:
    def __init__(self, server_key: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.server_key = server_key if server_key is not None else settings.KR_MIDTRANS_SERVER_KEY
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self.server_key}:".encode("utf-8")).decode("ascii")
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }
        if settings.KR_WEBHOOK_URL:
            headers["X-Override-Notification"] = settings.KR_WEBHOOK_URL
        return headers

    def create_transaction(self, *, order_id: str, gross_amount: int, customer: dict, items: list[dict]) -> dict:
        """Create a hosted payment page transaction. Returns {"token", "redirect_url"}."""
        body = {
            "transaction_details": {"order_id": order_id, "gross_amount": gross_amount},
            "customer_details": customer,
            "item_details": items,
        }
        try:
            with httpx.Client(timeout=settings.KR_HTTP_TIMEOUT_SECONDS, transport=self.transport) as client:
                resp = client.post(snap_api_url(), json=body, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Midtrans transaction for order %s failed: %s", order_id, e)
            raise PaymentGatewayError("Payment gateway unavailable, please retry") from e
        if not isinstance(data, dict) or not data.get("token"):
            raise PaymentGatewayError("Payment gateway returned no token")
        return {"token": data["token"], "redirect_url": data.get("redirect_url", "")}


def map_transaction_status(transaction_status: Optional[str], fraud_status: Optional[str] = None) -> str:
    """Gateway vocabulary -> pending | completed | failed. Unknown values stay pending."""
    if transaction_status == "capture":
        if fraud_status == "accept":
            return "completed"
        return "pending"
    if transaction_status == "settlement":
        return "completed"
    if transaction_status in ("cancel", "deny", "expire"):
        return "failed"
    return "pending"


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_signature(payload: dict, server_key: Optional[str] = None) -> bool:
    server_key = server_key if server_key is not None else settings.KR_MIDTRANS_SERVER_KEY
    expected = notification_signature(
        str(payload.get("order_id", "")),
        str(payload.get("status_code", "")),
        str(payload.get("gross_amount", "")),
        server_key,
    )
    return hmac.compare_digest(expected, str(payload.get("signature_key") or ""))


def parse_notification(payload: object) -> tuple[str, str]:
    """Returns (order_id, mapped status) or raises InvalidNotification."""
    if not isinstance(payload, dict):
        raise InvalidNotification("Notification body must be a JSON object")
    order_id = payload.get("order_id")
    if not order_id or not isinstance(order_id, str):
        raise InvalidNotification("Missing order_id")
    status = payload.get("transaction_status")
    if status is not None and not isinstance(status, str):
        raise InvalidNotification("Invalid transaction_status")
    return order_id, map_transaction_status(status, payload.get("fraud_status"))
