import logging
import os

from flask import Blueprint, jsonify, request
from marshmallow import Schema, fields, validate

from helpers import current_user, json_body, login_required_api
from models import CoinOrder
from services import payments
from services.errors import ApiError, BadRequest, NotFound, Unauthorized, UpstreamError

payments_bp = Blueprint("payments", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


class CreateOrderSchema(Schema):
    amount = fields.Float(required=True, validate=validate.Range(min=0, min_inclusive=False))
    coins = fields.Int(required=True, validate=validate.Range(min=1))
    currency = fields.Str(load_default="INR", validate=validate.Length(equal=3))


class LegacyCreateOrderSchema(Schema):
    userId = fields.Raw(load_default=None)
    coinAmount = fields.Int(required=True, validate=validate.Range(min=1))
    price = fields.Float(required=True, validate=validate.Range(min=0, min_inclusive=False))
    customerPhone = fields.Str(load_default=None, allow_none=True)
    customerEmail = fields.Email(load_default=None, allow_none=True)


_create_schema = CreateOrderSchema()
_legacy_schema = LegacyCreateOrderSchema()


def _gateway_error(exc: payments.PaymentGatewayError) -> ApiError:
    status = exc.status_code if exc.status_code >= 500 else 502
    return UpstreamError(
        "Failed to create payment order",
        status_code=status,
        details=exc.payload if exc.payload is not None else {"message": exc.message},
    )


@payments_bp.post("/payment/create-order")
@login_required_api
def create_order():
    data = json_body()
    for key in ("amount", "coins"):
        if data.get(key) in (None, ""):
            raise BadRequest("amount and coins are required")
    data = _create_schema.load(data)
    try:
        order = payments.create_coin_order(
            current_user(), data["amount"], data["coins"], data["currency"]
        )
    except payments.PaymentGatewayError as exc:
        raise _gateway_error(exc)
    return jsonify(
        {
            "order_id": order["order_id"],
            "payment_session_id": order["payment_session_id"],
            "payment_link": order["payment_link"],
        }
    )


@payments_bp.post("/create-order")
@login_required_api
def create_order_legacy():
    data = _legacy_schema.load(json_body())
    user = current_user()
    if data["userId"] not in (None, "") and str(data["userId"]) != str(user.id):
        raise Unauthorized("Cannot create orders for another user")
    try:
        order = payments.create_coin_order(
            user,
            data["price"],
            data["coinAmount"],
            phone=data["customerPhone"],
            email=data["customerEmail"],
        )
    except payments.PaymentGatewayError as exc:
        raise _gateway_error(exc)
    return jsonify({"success": True, **order})


@payments_bp.get("/payment/verify")
@login_required_api
def verify_payment():
    order_id = request.args.get("orderId") or request.args.get("order_id")
    if not order_id:
        raise BadRequest("Missing orderId")
    order = CoinOrder.query.filter_by(order_id=order_id, user_id=current_user().id).first()
    if order is None:
        raise NotFound("Order not found")
    if order.status == "PENDING":
        try:
            payments.refresh_order_status(order)
        except payments.PaymentGatewayError as exc:
            logger.warning(
                "Could not refresh order %s from gateway", order_id,
                extra={"error": exc.message},
            )
    return jsonify({"success": True, "order": order.to_dict(), "status": order.status})


def _webhook_order_fields(payload):
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    order = data.get("order") if isinstance(data.get("order"), dict) else {}
    top_order = payload.get("order") if isinstance(payload.get("order"), dict) else {}
    payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}
    order_id = data.get("orderId") or order.get("order_id") or top_order.get("order_id")
    status = (
        data.get("orderStatus")
        or top_order.get("order_status")
        or order.get("order_status")
        or payment.get("payment_status")
    )
    return order_id, status


@payments_bp.post("/payment/webhook")
def payment_webhook():
    raw = request.get_data()
    signature = request.headers.get("x-webhook-signature")
    if not payments.verify_signature(raw, signature, os.environ.get("CASHFREE_WEBHOOK_SECRET")):
        payments.PAYMENT_WEBHOOKS.labels(outcome="bad_signature").inc()
        logger.warning("Rejected payment webhook with invalid signature")
        raise BadRequest("Invalid signature")

    payload = json_body()
    order_id, status = _webhook_order_fields(payload)
    if not order_id:
        raise BadRequest("Missing order id")
    result = payments.apply_payment_status(order_id, status)
    payments.PAYMENT_WEBHOOKS.labels(outcome="processed").inc()
    return jsonify(result)


@payments_bp.post("/webhook")
def signed_webhook():
    raw = request.get_data()
    if not payments.verify_timestamped_signature(
        raw,
        request.headers.get("x-webhook-timestamp"),
        request.headers.get("x-webhook-signature"),
        os.environ.get("CASHFREE_SECRET_KEY"),
    ):
        payments.PAYMENT_WEBHOOKS.labels(outcome="bad_signature").inc()
        logger.warning("Rejected timestamped webhook with invalid signature")
        raise Unauthorized("Invalid signature")

    payload = json_body()
    order_id, status = _webhook_order_fields(payload)
    if not order_id:
        raise BadRequest("Missing order id")
    order = CoinOrder.query.filter_by(order_id=order_id).first()
    description = f"Purchased {order.coins} coins" if order else None
    result = payments.apply_payment_status(
        order_id, status, transaction_type="purchase", description=description
    )
    payments.PAYMENT_WEBHOOKS.labels(outcome="processed").inc()
    return jsonify(result)
