"""Run broker adapter operations against stored credentials.

Routes and the alert dispatcher both go through :func:`run_broker_operation`
so token persistence and deactivation on rejected tokens behave the same
everywhere.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from brokers.base import (
    BrokerAPIError,
    BrokerAuthError,
    BrokerBase,
    MissingCredentialsError,
)
from brokers.factory import get_broker_class, normalize_broker_name
from models import BrokerCredential, db
from services.errors import BadRequest, NotFound, Unauthorized, UpstreamError

logger = logging.getLogger(__name__)

# Operations that get one token refresh and one retry on a 401
REFRESHABLE_OPERATIONS = {"verify", "get_funds"}
# Operations that need an already active credential
ACTIVE_OPERATIONS = {"place_order", "cancel_order"}

# Keys that are never echoed back to the client
SECRET_KEYS = {
    "Access Token",
    "Refresh Token",
    "Feed Token",
    "Secret Key",
    "Password",
    "PIN",
    "Pin",
    "MPIN",
    "TOTP",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_credential(user_id: int, broker_id, broker: Optional[str] = None) -> BrokerCredential:
    """Return the user's credential ``broker_id`` or raise :class:`NotFound`.

    When ``broker`` is given the stored broker name must match it.
    """

    if broker_id in (None, ""):
        raise BadRequest("Missing broker_id")
    try:
        broker_id = int(broker_id)
    except (TypeError, ValueError):
        raise BadRequest("Invalid broker_id")

    credential = BrokerCredential.query.filter_by(id=broker_id, user_id=user_id).first()
    if credential is None:
        raise NotFound("Broker credentials not found")
    if broker and normalize_broker_name(credential.broker_name) != normalize_broker_name(broker):
        raise NotFound("Broker credentials not found")
    return credential


def build_adapter(credential: BrokerCredential):
    try:
        broker_cls = get_broker_class(credential.broker_name)
    except ValueError:
        raise BadRequest(f"Unsupported broker: {credential.broker_name}")
    bundle = dict(credential.credentials or {})
    if credential.access_token and not bundle.get("Access Token"):
        bundle["Access Token"] = credential.access_token
    return broker_cls(bundle)


def _expiry_from(tokens: Dict[str, Any]) -> Optional[datetime]:
    if tokens.get("Token Expiry"):
        return tokens["Token Expiry"]
    expires_in = tokens.get("Expires In")
    if expires_in:
        try:
            return _utcnow() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            return None
    return None


def persist_tokens(credential: BrokerCredential, tokens: Dict[str, Any]) -> None:
    """Store freshly issued tokens on ``credential`` without committing."""

    clean = {k: v for k, v in tokens.items() if v not in (None, "")}
    if not clean:
        return
    expiry = _expiry_from(clean)
    clean.pop("Token Expiry", None)
    credential.update_credentials(**clean)
    if clean.get("Access Token"):
        credential.access_token = clean["Access Token"]
    if expiry is not None:
        credential.token_expiry = expiry
    credential.last_activity = _utcnow()


def mark_active(credential: BrokerCredential) -> None:
    credential.is_active = True
    credential.is_pending_auth = False
    credential.auth_state = None
    credential.last_activity = _utcnow()


def deactivate_credential(credential: BrokerCredential, clear_token: bool = False) -> None:
    """Deactivate ``credential`` and commit.

    The session flag is cleared in the same write.
    """

    credential.deactivate()
    if clear_token:
        credential.access_token = None
        bundle = dict(credential.credentials or {})
        bundle.pop("Access Token", None)
        credential.credentials = bundle
    db.session.commit()


def _save_refreshed(adapter, credential: BrokerCredential) -> None:
    if adapter.refreshed_tokens:
        persist_tokens(credential, adapter.refreshed_tokens)
        db.session.commit()


def run_broker_operation(credential: BrokerCredential, operation: str, *args, **kwargs) -> Any:
    """Call ``operation`` on the credential's adapter.

    ``verify`` and ``get_funds`` refresh the token once on a 401. A rejected
    token on any other operation deactivates the credential.
    """

    if operation in ACTIVE_OPERATIONS and not credential.is_active:
        raise BadRequest(
            f"{credential.broker_name} is not active. Please authenticate first."
        )

    adapter = build_adapter(credential)
    func = getattr(adapter, operation)
    refreshable = operation in REFRESHABLE_OPERATIONS
    try:
        if refreshable:
            result = adapter.with_token_refresh(func, *args, **kwargs)
        else:
            result = func(*args, **kwargs)
    except BrokerAuthError as exc:
        _save_refreshed(adapter, credential)
        if refreshable:
            logger.warning(
                "Token check failed for credential %s: %s", credential.id, exc.message,
                extra={"broker": adapter.BROKER, "error": exc.message},
            )
            raise Unauthorized(exc.message, details=exc.payload)
        logger.warning(
            "Broker rejected token for credential %s, deactivating", credential.id,
            extra={"broker": adapter.BROKER, "error": exc.message},
        )
        deactivate_credential(credential)
        raise Unauthorized(
            f"{credential.broker_name} session expired. Please reactivate the broker.",
            details=exc.payload,
        )
    except MissingCredentialsError as exc:
        raise BadRequest(exc.message)
    except BrokerAPIError as exc:
        _save_refreshed(adapter, credential)
        logger.warning(
            "Broker %s failed for credential %s", operation, credential.id,
            extra={"broker": adapter.BROKER, "error": exc.message},
        )
        raise UpstreamError(
            exc.message,
            status_code=exc.status_code,
            details=exc.payload if exc.payload is not None else {"message": exc.message},
        )

    if adapter.refreshed_tokens:
        persist_tokens(credential, adapter.refreshed_tokens)
    if operation == "verify":
        mark_active(credential)
    else:
        credential.last_activity = _utcnow()
    db.session.commit()
    return result


def authenticate_credential(credential: BrokerCredential) -> Dict[str, Any]:
    """Direct login for brokers that support it; marks the credential active."""

    adapter = build_adapter(credential)
    try:
        tokens = adapter.authenticate()
    except MissingCredentialsError as exc:
        raise BadRequest(exc.message)
    except BrokerAPIError as exc:
        status = 401 if isinstance(exc, BrokerAuthError) else exc.status_code
        raise UpstreamError(
            f"{adapter.DISPLAY_NAME} authentication failed: {exc.message}",
            status_code=status,
            details=exc.payload,
        )
    persist_tokens(credential, tokens)
    mark_active(credential)
    db.session.commit()
    return tokens


def place_order(credential: BrokerCredential, order_details: Dict[str, Any]) -> Dict[str, Any]:
    """Place ``order_details`` and return the client facing response body."""

    result = run_broker_operation(credential, "place_order", order_details)
    order_id = None
    if isinstance(result, dict):
        order_id = BrokerBase.extract_order_id(result)
    logger.info(
        "Order placed for credential %s: %s", credential.id, order_id,
        extra={"broker": normalize_broker_name(credential.broker_name)},
    )
    return {
        "success": True,
        "message": "Order placed successfully",
        "order_id": order_id,
        "data": result.get("data", result) if isinstance(result, dict) else result,
    }


def mask_credentials(bundle: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    masked = {}
    for key, value in (bundle or {}).items():
        if key in SECRET_KEYS and value:
            text = str(value)
            masked[key] = f"{text[:4]}****" if len(text) > 8 else "****"
        else:
            masked[key] = value
    return masked


def serialize_credential(credential: BrokerCredential) -> Dict[str, Any]:
    return {
        "id": credential.id,
        "broker_name": credential.broker_name,
        "credentials": mask_credentials(credential.credentials),
        "is_active": credential.is_active,
        "is_pending_auth": credential.is_pending_auth,
        "session_active": credential.session_active,
        "token_expiry": credential.token_expiry.isoformat() if credential.token_expiry else None,
        "last_activity": credential.last_activity.isoformat() if credential.last_activity else None,
        "created_at": credential.created_at.isoformat() if credential.created_at else None,
    }
