"""Cashfree payment gateway client and coin order settlement."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from prometheus_client import Counter, Histogram
from sqlalchemy import update

from models import CoinOrder, User, db
from services import coins
from services.errors import NotFound

logger = logging.getLogger(__name__)

CASHFREE_BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}
CASHFREE_API_VERSION = os.environ.get("CASHFREE_API_VERSION", "2023-08-01")
APP_URL = os.environ.get("APP_URL", "http://localhost:5000").rstrip("/")
PAYMENT_TIMEOUT = int(os.environ.get("PAYMENT_TIMEOUT", "20"))

# Gateway order statuses
PAID_STATUSES = {"PAID", "SUCCESS"}
FAILED_STATUSES = {"FAILED", "CANCELLED", "EXPIRED", "USER_DROPPED"}

PAYMENT_API_LATENCY = Histogram(
    "payment_api_request_duration_seconds",
    "Time spent performing payment gateway HTTP requests",
    ["method"],
)
PAYMENT_WEBHOOKS = Counter(
    "payment_webhooks_total",
    "Payment gateway webhook deliveries, by outcome",
    ["outcome"],
)


class PaymentGatewayError(Exception):
    """The gateway rejected a request or could not be reached.

    ``transient`` marks failures worth one more attempt (connection errors,
    timeouts, HTTP 429 and 5xx).
    """

    def __init__(self, message, status_code=502, payload=None, transient=False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload
        self.transient = transient


class CashfreeClient:
    def __init__(
        self,
        app_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        environment: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.app_id = app_id or os.environ.get("CASHFREE_APP_ID")
        self.secret_key = secret_key or os.environ.get("CASHFREE_SECRET_KEY")
        environment = (environment or os.environ.get("CASHFREE_ENVIRONMENT") or "sandbox").lower()
        self.base_url = CASHFREE_BASE_URLS.get(environment, CASHFREE_BASE_URLS["sandbox"])
        self.api_version = api_version or CASHFREE_API_VERSION
        self.timeout = timeout or PAYMENT_TIMEOUT
        self.session = requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-api-version": self.api_version,
            "x-client-id": self.app_id or "",
            "x-client-secret": self.secret_key or "",
        }

    def _request(self, method, path, **kwargs):
        with PAYMENT_API_LATENCY.labels(method=method).time():
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )

    def _call(self, method, path, **kwargs) -> Dict[str, Any]:
        if not self.app_id or not self.secret_key:
            raise PaymentGatewayError("Payment gateway is not configured", 500)
        try:
            response = self._request(method, path, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise PaymentGatewayError(
                f"Payment gateway unreachable: {exc}", 502, transient=True
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise PaymentGatewayError(f"Payment gateway request failed: {exc}", 502) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": getattr(response, "text", "")}

        status = response.status_code
        if not 200 <= status < 300:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise PaymentGatewayError(
                message or f"Payment gateway error ({status})",
                status,
                payload,
                transient=status == 429 or status >= 500,
            )
        return payload

    def create_order(self, payload: Dict[str, Any], attempts: int = 2) -> Dict[str, Any]:
        """Create a gateway order, retrying transient failures once."""

        for attempt in range(1, attempts + 1):
            try:
                return self._call("POST", "/orders", json=payload)
            except PaymentGatewayError as exc:
                if not exc.transient or attempt == attempts:
                    raise
                logger.warning(
                    "Cashfree create order attempt %s failed, retrying", attempt,
                    extra={"error": exc.message},
                )
        raise PaymentGatewayError("Order creation failed", 502)

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/orders/{order_id}")


def new_order_id() -> str:
    return f"order_{uuid.uuid4()}"


def build_order_payload(
    order_id: str,
    amount,
    currency: str,
    user: User,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "order_id": order_id,
        "order_amount": float(amount),
        "order_currency": currency,
        "customer_details": {
            "customer_id": str(user.id),
            "customer_email": email or user.email,
            "customer_phone": phone or user.phone or "9999999999",
            "customer_name": user.name or user.email,
        },
        "order_meta": {
            "return_url": f"{APP_URL}/payment/status?order_id={order_id}",
            "notify_url": f"{APP_URL}/api/payment/webhook",
        },
        "order_note": note or "Coin purchase",
    }


def create_coin_order(
    user: User,
    amount,
    coins_count: int,
    currency: str = "INR",
    phone: Optional[str] = None,
    email: Optional[str] = None,
    client: Optional[CashfreeClient] = None,
) -> Dict[str, Any]:
    """Persist a PENDING order and register it with the gateway.

    The order row is written before the gateway call and marked FAILED when
    the gateway rejects it.
    """

    client = client or CashfreeClient()
    order_id = new_order_id()
    order = CoinOrder(
        order_id=order_id,
        user_id=user.id,
        amount=Decimal(str(amount)),
        coins=int(coins_count),
        currency=currency,
        status="PENDING",
    )
    db.session.add(order)
    db.session.commit()

    payload = build_order_payload(
        order_id, amount, currency, user, phone=phone, email=email,
        note=f"Purchase of {coins_count} coins",
    )
    try:
        result = client.create_order(payload)
    except PaymentGatewayError:
        order.status = "FAILED"
        db.session.commit()
        logger.error("Cashfree rejected order %s", order_id)
        raise

    order.cf_order_id = str(result.get("cf_order_id") or "") or None
    order.payment_session_id = result.get("payment_session_id")
    db.session.commit()
    logger.info("Created coin order %s for user %s", order_id, user.id)
    return {
        "order_id": order_id,
        "cf_order_id": order.cf_order_id,
        "payment_session_id": order.payment_session_id,
        "payment_link": result.get("payment_link"),
        "order_status": result.get("order_status"),
    }


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Hex HMAC-SHA256 of the raw body."""

    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.strip().encode("utf-8"))


def verify_timestamped_signature(
    raw_body: bytes,
    timestamp: Optional[str],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """Base64 HMAC-SHA256 of ``timestamp + raw body``."""

    if not signature or not timestamp or not secret:
        return False
    message = timestamp.encode() + raw_body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected.encode(), signature.strip().encode("utf-8"))


def _transition(order_id: str, status: str) -> bool:
    """Move a PENDING order to ``status``; False when another writer won."""

    result = db.session.execute(
        update(CoinOrder)
        .where(CoinOrder.order_id == order_id, CoinOrder.status == "PENDING")
        .values(status=status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def apply_payment_status(
    order_id: str,
    gateway_status: Optional[str],
    transaction_type: str = "recharge",
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Settle ``order_id`` from a gateway status exactly once.

    A paid order is completed and credited in one transaction. Orders that
    already left PENDING are acknowledged without changes.
    """

    order = CoinOrder.query.filter_by(order_id=order_id).first()
    if order is None:
        raise NotFound("Order not found")
    if order.status != "PENDING":
        return {"success": True, "message": "Order already processed", "status": order.status}

    status = (gateway_status or "").upper()
    if status in PAID_STATUSES:
        if not _transition(order_id, "COMPLETED"):
            db.session.rollback()
            return {"success": True, "message": "Order already processed"}
        coins.add_transaction(
            order.user_id,
            order.coins,
            transaction_type,
            description or f"Payment completed for order {order_id}",
            reference=order_id,
        )
        db.session.commit()
        logger.info("Credited %s coins for order %s", order.coins, order_id)
        return {
            "success": True,
            "message": "Payment processed",
            "status": "COMPLETED",
            "coins": order.coins,
        }

    if status in FAILED_STATUSES:
        if not _transition(order_id, "FAILED"):
            db.session.rollback()
            return {"success": True, "message": "Order already processed"}
        db.session.commit()
        logger.info("Order %s marked failed (%s)", order_id, status)
        return {"success": True, "message": "Payment failed", "status": "FAILED"}

    return {"success": True, "message": f"Status {status or 'UNKNOWN'} acknowledged"}


def refresh_order_status(order: CoinOrder, client: Optional[CashfreeClient] = None) -> str:
    """Ask the gateway about a PENDING order and settle it when final."""

    if order.status != "PENDING":
        return order.status
    client = client or CashfreeClient()
    result = client.get_order(order.order_id)
    apply_payment_status(order.order_id, result.get("order_status"))
    db.session.refresh(order)
    return order.status
