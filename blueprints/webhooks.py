import logging
import secrets

from flask import Blueprint, jsonify, request

from helpers import current_user, json_body, login_required_api
from models import Webhook, WebhookLog, db
from services.alert_dispatcher import WEBHOOK_ALERTS, dispatch_alert, resolve_webhook
from services.errors import NotFound
from services.rate_limit import webhook_limiter

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


@webhooks_bp.post("/webhook/trading-view/<token>")
def trading_view_alert(token):
    """Receive a TradingView alert for the webhook identified by ``token``."""

    if not webhook_limiter.allow(token):
        WEBHOOK_ALERTS.labels(outcome="rate_limited").inc()
        logger.warning("Webhook rate limit exceeded")
        return jsonify({"error": "Rate limit exceeded. Try again later."}), 429

    webhook = resolve_webhook(token)
    body, status = dispatch_alert(webhook, request.get_json(silent=True))
    return jsonify(body), status


def _webhook_dict(webhook: Webhook) -> dict:
    return {
        "id": webhook.id,
        "name": webhook.name,
        "token": webhook.token,
        "url": f"{request.host_url.rstrip('/')}/api/webhook/trading-view/{webhook.token}",
        "is_active": webhook.is_active,
        "request_count": webhook.request_count,
        "last_used_at": webhook.last_used_at.isoformat() if webhook.last_used_at else None,
        "created_at": webhook.created_at.isoformat() if webhook.created_at else None,
    }


def _own_webhook(webhook_id: int) -> Webhook:
    webhook = Webhook.query.filter_by(id=webhook_id, user_id=current_user().id).first()
    if webhook is None:
        raise NotFound("Webhook not found")
    return webhook


@webhooks_bp.get("/webhooks")
@login_required_api
def list_webhooks():
    webhooks = (
        Webhook.query.filter_by(user_id=current_user().id)
        .order_by(Webhook.created_at.desc())
        .all()
    )
    return jsonify({"webhooks": [_webhook_dict(w) for w in webhooks]})


@webhooks_bp.post("/webhooks")
@login_required_api
def create_webhook():
    data = json_body()
    webhook = Webhook(
        user_id=current_user().id,
        name=(data.get("name") or "TradingView").strip()[:120],
        token=secrets.token_urlsafe(32),
    )
    db.session.add(webhook)
    db.session.commit()
    return jsonify({"webhook": _webhook_dict(webhook)}), 201


@webhooks_bp.post("/webhooks/<int:webhook_id>/toggle")
@login_required_api
def toggle_webhook(webhook_id):
    webhook = _own_webhook(webhook_id)
    webhook.is_active = not webhook.is_active
    db.session.commit()
    return jsonify({"webhook": _webhook_dict(webhook)})


@webhooks_bp.delete("/webhooks/<int:webhook_id>")
@login_required_api
def delete_webhook(webhook_id):
    webhook = _own_webhook(webhook_id)
    db.session.delete(webhook)
    db.session.commit()
    return jsonify({"success": True})


@webhooks_bp.get("/webhooks/<int:webhook_id>/logs")
@login_required_api
def webhook_logs(webhook_id):
    webhook = _own_webhook(webhook_id)
    limit = min(request.args.get("limit", 50, type=int), 200)
    logs = (
        WebhookLog.query.filter_by(webhook_id=webhook.id)
        .order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify(
        {
            "logs": [
                {
                    "id": log.id,
                    "status": log.status,
                    "payload": log.payload,
                    "response": log.response,
                    "error_message": log.error_message,
                    "created_at": log.created_at.isoformat() if log.created_at else None,
                }
                for log in logs
            ]
        }
    )
