"""Translate TradingView alerts into broker order requests."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from marshmallow import INCLUDE, Schema, ValidationError, fields, pre_load, validates_schema
from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from brokers.factory import normalize_broker_name
from models import BrokerCredential, Webhook, WebhookLog, db
from services import broker_actions
from services.errors import ApiError, BadRequest, Forbidden, Unauthorized

logger = logging.getLogger(__name__)

WEBHOOK_ALERTS = Counter(
    "webhook_alerts_total",
    "TradingView alerts received, by outcome",
    ["outcome"],
)

DISPATCH_BROKERS = ("angelone", "fyers", "upstox")


class AlertSchema(Schema):
    """Minimal alert body: ``symbol``, ``action`` and ``quantity`` must be set.

    TradingView templates send ``orderType``, ``productType`` and
    ``triggerPrice``; those are loaded into the snake_case fields.
    """

    ALIASES = {
        "orderType": "order_type",
        "productType": "product",
        "product_type": "product",
        "triggerPrice": "trigger_price",
    }

    class Meta:
        unknown = INCLUDE

    symbol = fields.Raw(required=True)
    action = fields.Raw(required=True)
    quantity = fields.Raw(required=True)
    order_type = fields.Str(allow_none=True)
    price = fields.Raw(allow_none=True)
    product = fields.Str(allow_none=True)
    trigger_price = fields.Raw(allow_none=True)

    @pre_load
    def strip_blank(self, data, **_):
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            if value is None:
                continue
            target = self.ALIASES.get(key, key)
            if target != key and data.get(target) is not None:
                continue
            cleaned[target] = value
        return cleaned

    @validates_schema
    def require_truthy(self, data, **_):
        missing = [key for key in ("symbol", "action", "quantity") if not data.get(key)]
        if missing:
            raise ValidationError(
                {key: ["Field must be set."] for key in missing}
            )


_schema = AlertSchema()


def _utcnow():
    return datetime.now(timezone.utc)


def resolve_webhook(token: str) -> Webhook:
    webhook = Webhook.query.filter_by(token=token).first()
    if webhook is None:
        WEBHOOK_ALERTS.labels(outcome="invalid_token").inc()
        raise Unauthorized("Invalid webhook token")
    if not webhook.is_active:
        WEBHOOK_ALERTS.labels(outcome="inactive").inc()
        raise Forbidden("Webhook is inactive")
    return webhook


def validate_alert(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise BadRequest("Invalid JSON payload")
    try:
        return _schema.load(payload)
    except ValidationError as exc:
        required = {"symbol", "action", "quantity"}
        if required & set(exc.messages):
            message = "Missing required fields: symbol, action, quantity"
        else:
            message = "Invalid alert payload"
        raise BadRequest(message, details=exc.messages)


def record_usage(webhook: Webhook) -> None:
    """Bump the usage counters; failures are logged and never raised."""

    try:
        webhook.request_count = (webhook.request_count or 0) + 1
        webhook.last_used_at = _utcnow()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning(
            "Failed to record usage for webhook %s", webhook.id,
            extra={"error": str(exc)},
        )


def normalize_action(action: Any) -> str:
    return "BUY" if str(action).strip().upper() == "BUY" else "SELL"


def build_order_request(broker_name: str, broker_id: int, alert: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``{broker_id, order_details}`` in the broker's own field names."""

    broker = normalize_broker_name(broker_name)
    side = normalize_action(alert["action"])
    order_type = alert.get("order_type") or "MARKET"

    if broker == "angelone":
        details = {
            "symbol": alert["symbol"],
            "order_side": side,
            "quantity": alert["quantity"],
            "order_type": order_type,
            "price": alert.get("price") or "0",
            "product": alert.get("product") or "INTRADAY",
        }
    elif broker == "fyers":
        details = {
            "symbol": alert["symbol"],
            "transactionType": side,
            "quantity": alert["quantity"],
            "orderType": order_type,
            "price": alert.get("price") or 0,
            "productType": alert.get("product") or "INTRADAY",
            "triggerPrice": alert.get("trigger_price") or 0,
        }
    elif broker == "upstox":
        details = {
            "instrument_key": alert["symbol"],
            "transaction_type": side,
            "quantity": alert["quantity"],
            "order_type": order_type,
            "price": alert.get("price") or 0,
            "product_type": alert.get("product") or "INTRADAY",
            "trigger_price": alert.get("trigger_price") or 0,
        }
    else:
        raise BadRequest(f"Unsupported broker: {broker_name}")
    return {"broker_id": broker_id, "order_details": details}


def _write_log(webhook: Webhook, payload, status, response=None, error=None) -> None:
    try:
        db.session.add(
            WebhookLog(
                webhook_id=webhook.id,
                user_id=webhook.user_id,
                payload=payload,
                status=status,
                response=response,
                error_message=error,
            )
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Failed to write webhook log for %s", webhook.id,
            extra={"error": str(exc)},
        )


def _first_order_id(body: Dict[str, Any]) -> str:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    for value in (data.get("order_id"), data.get("id"), body.get("order_id"), body.get("id")):
        if value:
            return str(value)
    return "unknown"


def dispatch_alert(webhook: Webhook, payload: Any) -> Tuple[Dict[str, Any], int]:
    """Validate ``payload`` and place the order for the webhook's owner.

    Returns the response body and HTTP status.
    """

    alert = validate_alert(payload)
    record_usage(webhook)

    credential = (
        BrokerCredential.query.filter_by(user_id=webhook.user_id, is_active=True)
        .order_by(BrokerCredential.created_at.desc(), BrokerCredential.id.desc())
        .first()
    )
    if credential is None:
        _write_log(webhook, payload, "failed", error="No active broker found")
        WEBHOOK_ALERTS.labels(outcome="no_broker").inc()
        logger.info("No active broker for webhook %s, alert dropped", webhook.id)
        return {"error": "No active broker found", "queued": True}, 200

    request_body = build_order_request(credential.broker_name, credential.id, alert)
    broker = normalize_broker_name(credential.broker_name)

    try:
        result = broker_actions.place_order(credential, request_body["order_details"])
    except ApiError as exc:
        details = exc.details if exc.details is not None else exc.to_dict()
        _write_log(webhook, payload, "failed", response=details, error=exc.message)
        WEBHOOK_ALERTS.labels(outcome="failed").inc()
        return {"error": "Failed to place order with broker", "details": details}, exc.status_code

    _write_log(webhook, payload, "success", response=result)
    WEBHOOK_ALERTS.labels(outcome="success").inc()
    return {
        "success": True,
        "message": "Order submitted successfully",
        "order_id": _first_order_id(result),
        "broker": broker,
    }, 200
