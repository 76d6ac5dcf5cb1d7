import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from .base import BrokerBase, BrokerAPIError

logger = logging.getLogger(__name__)

DHAN_API_URL = os.environ.get("DHAN_API_URL", "https://api.dhan.co")
DHAN_AUTH_URL = os.environ.get("DHAN_AUTH_URL", "https://api.dhan.co/oauth2/authorize")
DHAN_TOKEN_URL = os.environ.get("DHAN_TOKEN_URL", "https://api.dhan.co/oauth2/token")
DHAN_REDIRECT_URI = os.environ.get(
    "DHAN_REDIRECT_URI", "https://www.algoz.tech/api/brokers/dhan/callback"
)

# Dhan tokens default to one trading day when the response omits expiry
DEFAULT_EXPIRES_IN = 86400


def _clean_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class DhanBroker(BrokerBase):
    BROKER = "dhan"
    DISPLAY_NAME = "Dhan"
    API_BASE = DHAN_API_URL
    SUPPORTS_OAUTH = True
    AUTH_STATUSES = (401, 403)

    @property
    def client_id(self) -> Optional[str]:
        return _clean_string(self.credential("Client ID", "API Key"))

    def _auth_headers(self) -> Dict[str, str]:
        headers = {}
        if self.client_id:
            headers["client-id"] = self.client_id
        if self.access_token:
            headers["access-token"] = self.access_token
        return headers

    def _error_message(self, payload, default):
        if isinstance(payload, dict) and payload.get("errorMessage"):
            return payload["errorMessage"]
        return super()._error_message(payload, default)

    def _token_set(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        access_token = payload.get("access_token") or payload.get("accessToken")
        if not access_token:
            raise BrokerAPIError("Dhan returned no access token", 502, payload)
        expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN
        return {
            "Access Token": access_token,
            "Refresh Token": payload.get("refresh_token"),
            "Token Type": payload.get("token_type") or "Bearer",
            "Expires In": expires_in,
            "Token Expiry": (
                datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            ).isoformat(),
        }

    # ------------------------------------------------------------------
    def authenticate(self):
        """Dhan issues tokens from its console; check the stored one works."""
        self.require("Client ID", "Access Token")
        self.verify()
        return {"Access Token": self.access_token}

    def authorize_url(self, state, redirect_uri=None):
        self.require("Client ID")
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri or DHAN_REDIRECT_URI,
                "state": state,
            }
        )
        return f"{DHAN_AUTH_URL}?{query}"

    def exchange_code(self, code, redirect_uri=None):
        self.require("Client ID")
        payload = self._call(
            "POST",
            DHAN_TOKEN_URL,
            auth=False,
            json={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "redirect_uri": redirect_uri or DHAN_REDIRECT_URI,
            },
        )
        tokens = self._token_set(payload)
        self.apply_tokens(tokens)
        return tokens

    def refresh_access_token(self):
        self.require("Client ID", "Refresh Token")
        payload = self._call(
            "POST",
            DHAN_TOKEN_URL,
            auth=False,
            json={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
            },
        )
        return self._token_set(payload)

    def verify(self):
        self.require("Access Token")
        return self._call("GET", "/v2/profile")

    def get_funds(self):
        self.require("Access Token")
        return self._call("GET", "/v2/fundlimit")

    def get_positions(self):
        self.require("Access Token")
        return self._call("GET", "/v2/positions")

    def place_order(self, order_details):
        self.require("Client ID", "Access Token")
        details = order_details or {}
        side = details.get("transaction_type") or details.get("order_side")
        security_id = details.get("security_id") or details.get("securityId")
        quantity = details.get("quantity")
        if not side or not security_id or not quantity:
            raise BrokerAPIError(
                "security_id, transaction_type and quantity are required", 400
            )
        order_type = str(details.get("order_type") or "MARKET").upper()
        order = {
            "dhanClientId": self.client_id,
            "transactionType": str(side).upper(),
            "exchangeSegment": details.get("exchange_segment", "NSE_EQ"),
            "productType": str(details.get("product_type") or "INTRADAY").upper(),
            "orderType": order_type,
            "validity": details.get("validity", "DAY"),
            "securityId": str(security_id),
            "quantity": self.to_number(quantity, int, "quantity"),
            "price": self.to_number(details.get("price") or 0, float, "price"),
            "triggerPrice": self.to_number(details.get("trigger_price") or 0, float, "trigger_price"),
        }
        return self._call("POST", "/v2/orders", json=order)

    def cancel_order(self, order_id, **kwargs):
        self.require("Access Token")
        return self._call("DELETE", f"/v2/orders/{order_id}")
