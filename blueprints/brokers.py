import json
import logging
import os
import secrets
from datetime import datetime, timezone

from flask import Blueprint, Response, jsonify, request
from markupsafe import escape
from marshmallow import Schema, fields, validate

from brokers.base import BrokerAPIError
from brokers.factory import get_broker_class, normalize_broker_name, supported_brokers
from helpers import current_user, json_body, login_required_api
from models import BrokerCredential, db
from services import broker_actions
from services.errors import BadRequest, Unauthorized
from services.session_sync import set_session_state, sync_broker_sessions

brokers_bp = Blueprint("brokers", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


class BrokerCredentialSchema(Schema):
    broker_name = fields.Str(required=True, validate=validate.Length(min=1, max=50))
    credentials = fields.Dict(keys=fields.Str(), required=True)


class SessionStateSchema(Schema):
    broker_id = fields.Int(required=True)
    active = fields.Bool(required=True)


_credential_schema = BrokerCredentialSchema()
_session_schema = SessionStateSchema()


def _credential_for_request(broker):
    user = current_user()
    data = json_body()
    credential = broker_actions.load_credential(user.id, data.get("broker_id"), broker)
    return credential, data


# ---------------------------------------------------------------------------
# credential management
@brokers_bp.get("/brokers")
@login_required_api
def list_brokers():
    user = current_user()
    credentials = (
        BrokerCredential.query.filter_by(user_id=user.id)
        .order_by(BrokerCredential.created_at.desc())
        .all()
    )
    return jsonify(
        {
            "brokers": [broker_actions.serialize_credential(c) for c in credentials],
            "supported": supported_brokers(),
        }
    )


@brokers_bp.post("/brokers")
@login_required_api
def create_broker():
    data = _credential_schema.load(json_body())
    try:
        get_broker_class(data["broker_name"])
    except ValueError:
        raise BadRequest(f"Unsupported broker: {data['broker_name']}")

    user = current_user()
    credential = BrokerCredential(
        user_id=user.id,
        broker_name=data["broker_name"],
        credentials=data["credentials"],
        is_active=False,
    )
    db.session.add(credential)
    db.session.commit()
    logger.info("Stored %s credentials for user %s", data["broker_name"], user.id)
    return jsonify({"broker": broker_actions.serialize_credential(credential)}), 201


@brokers_bp.delete("/brokers/<int:broker_id>")
@login_required_api
def delete_broker(broker_id):
    user = current_user()
    credential = broker_actions.load_credential(user.id, broker_id)
    db.session.delete(credential)
    db.session.commit()
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# session flags
@brokers_bp.get("/brokers/sessions")
@login_required_api
def list_sessions():
    user = current_user()
    credentials = BrokerCredential.query.filter_by(user_id=user.id).all()
    return jsonify(
        {
            "sessions": [
                {
                    "broker_id": c.id,
                    "broker_name": c.broker_name,
                    "is_active": c.is_active,
                    "session_active": c.session_active,
                    "last_activity": c.last_activity.isoformat() if c.last_activity else None,
                }
                for c in credentials
            ]
        }
    )


@brokers_bp.post("/brokers/sessions")
@login_required_api
def update_session():
    data = _session_schema.load(json_body())
    user = current_user()
    credential = broker_actions.load_credential(user.id, data["broker_id"])
    set_session_state(db.session, credential, data["active"])
    return jsonify({"success": True, "broker_id": credential.id, "session_active": credential.session_active})


@brokers_bp.get("/brokers/session-checker")
@login_required_api
def session_checker():
    count = sync_broker_sessions(db.session)
    return jsonify({"success": True, "deactivated": count})


@brokers_bp.get("/cron/sync-sessions")
def cron_sync_sessions():
    secret = os.environ.get("CRON_SECRET")
    if secret:
        supplied = request.headers.get("Authorization", "")
        if not secrets.compare_digest(supplied, f"Bearer {secret}"):
            raise Unauthorized("Unauthorized")
    count = sync_broker_sessions(db.session)
    return jsonify(
        {
            "success": True,
            "cron_job": "sync-broker-sessions",
            "method": request.method,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "deactivated": count,
        }
    )


# ---------------------------------------------------------------------------
# broker operations
@brokers_bp.post("/brokers/<broker>/authenticate")
@login_required_api
def authenticate(broker):
    credential, _ = _credential_for_request(broker)
    broker_actions.authenticate_credential(credential)
    return jsonify(
        {
            "success": True,
            "message": f"{credential.broker_name} authenticated successfully",
            "broker": broker_actions.serialize_credential(credential),
        }
    )


@brokers_bp.post("/brokers/<broker>/oauth")
@login_required_api
def start_oauth(broker):
    credential, data = _credential_for_request(broker)
    adapter = broker_actions.build_adapter(credential)
    if not adapter.SUPPORTS_OAUTH:
        raise BadRequest(f"{credential.broker_name} does not support OAuth")

    state = secrets.token_urlsafe(24)
    redirect_uri = data.get("redirect_uri")
    try:
        url = adapter.authorize_url(state, redirect_uri)
    except BrokerAPIError as exc:
        raise BadRequest(exc.message)

    credential.auth_state = state
    credential.is_pending_auth = True
    credential.redirect_url = redirect_uri
    db.session.commit()
    return jsonify({"success": True, "redirect_url": url, "state": state})


_CALLBACK_PAGE = """<!DOCTYPE html>
<html><head><title>{title}</title></head>
<body>
<p>{message}</p>
<script>
  if (window.opener) {{
    window.opener.postMessage({payload}, "*");
    window.close();
  }}
</script>
</body></html>
"""


def _callback_page(broker, success, message, status=200):
    event = f"{normalize_broker_name(broker).upper()}_AUTH_{'SUCCESS' if success else 'FAILURE'}"
    payload = json.dumps({"type": event, "message": message}).replace("</", "<\\/")
    body = _CALLBACK_PAGE.format(
        title=escape(event),
        message=escape(message),
        payload=payload,
    )
    return Response(body, status=status, mimetype="text/html")


@brokers_bp.get("/brokers/<broker>/callback")
def oauth_callback(broker):
    code = request.args.get("code") or request.args.get("auth_code")
    state = request.args.get("state")
    if request.args.get("error"):
        return _callback_page(broker, False, request.args.get("error"), 400)
    if not code or not state:
        return _callback_page(broker, False, "Missing authorization code or state", 400)

    credential = BrokerCredential.query.filter_by(auth_state=state, is_pending_auth=True).first()
    if credential is None or normalize_broker_name(credential.broker_name) != normalize_broker_name(broker):
        return _callback_page(broker, False, "Invalid or expired authorization state", 400)

    adapter = broker_actions.build_adapter(credential)
    try:
        tokens = adapter.exchange_code(code, credential.redirect_url)
    except BrokerAPIError as exc:
        logger.warning(
            "OAuth code exchange failed for credential %s", credential.id,
            extra={"broker": adapter.BROKER, "error": exc.message},
        )
        credential.is_pending_auth = False
        credential.auth_state = None
        db.session.commit()
        return _callback_page(broker, False, exc.message, 400)

    broker_actions.persist_tokens(credential, tokens)
    broker_actions.mark_active(credential)
    db.session.commit()
    logger.info("OAuth completed for credential %s", credential.id, extra={"broker": adapter.BROKER})
    return _callback_page(broker, True, f"{credential.broker_name} connected successfully")


@brokers_bp.post("/brokers/<broker>/verify")
@login_required_api
def verify(broker):
    credential, _ = _credential_for_request(broker)
    profile = broker_actions.run_broker_operation(credential, "verify")
    return jsonify({"success": True, "message": "Token is valid", "data": profile})


@brokers_bp.post("/brokers/<broker>/place-order")
@login_required_api
def place_order(broker):
    credential, data = _credential_for_request(broker)
    order_details = data.get("order_details")
    if not isinstance(order_details, dict):
        order_details = {k: v for k, v in data.items() if k != "broker_id"}
    return jsonify(broker_actions.place_order(credential, order_details))


@brokers_bp.post("/brokers/<broker>/cancel-order")
@login_required_api
def cancel_order(broker):
    credential, data = _credential_for_request(broker)
    order_id = data.get("order_id")
    if not order_id:
        raise BadRequest("Missing order_id")
    kwargs = {}
    if data.get("variety"):
        kwargs["variety"] = data["variety"]
    result = broker_actions.run_broker_operation(credential, "cancel_order", order_id, **kwargs)
    return jsonify({"success": True, "message": "Order cancelled", "data": result})


@brokers_bp.post("/brokers/<broker>/get-funds")
@login_required_api
def get_funds(broker):
    credential, _ = _credential_for_request(broker)
    result = broker_actions.run_broker_operation(credential, "get_funds")
    return jsonify({"success": True, "data": result})


@brokers_bp.post("/brokers/<broker>/get-positions")
@login_required_api
def get_positions(broker):
    credential, _ = _credential_for_request(broker)
    result = broker_actions.run_broker_operation(credential, "get_positions")
    return jsonify({"success": True, "data": result})


@brokers_bp.post("/brokers/<broker>/deactivate")
@login_required_api
def deactivate(broker):
    credential, _ = _credential_for_request(broker)
    broker_actions.deactivate_credential(credential, clear_token=True)
    logger.info("Deactivated credential %s", credential.id)
    return jsonify({"success": True, "message": f"{credential.broker_name} deactivated"})
