import logging
import os
from urllib.parse import urlencode

from .base import BrokerBase, BrokerAPIError

logger = logging.getLogger(__name__)

UPSTOX_API_URL = os.environ.get("UPSTOX_API_URL", "https://api.upstox.com/v2")
UPSTOX_AUTH_URL = os.environ.get(
    "UPSTOX_AUTH_URL", f"{UPSTOX_API_URL}/login/authorization/dialog"
)
UPSTOX_TOKEN_URL = os.environ.get(
    "UPSTOX_TOKEN_URL", f"{UPSTOX_API_URL}/login/authorization/token"
)
UPSTOX_REDIRECT_URI = os.environ.get(
    "UPSTOX_REDIRECT_URI", "https://www.algoz.tech/api/brokers/upstox/callback"
)


class UpstoxBroker(BrokerBase):
    BROKER = "upstox"
    DISPLAY_NAME = "Upstox"
    API_BASE = UPSTOX_API_URL
    SUPPORTS_OAUTH = True
    AUTH_STATUSES = (401, 403)

    ORDER_TYPES = {"MARKET", "LIMIT", "SL", "SL-M"}

    def _auth_headers(self):
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def _error_message(self, payload, default):
        # {"status": "error", "errors": [{"message": ...}]}
        if isinstance(payload, dict) and isinstance(payload.get("errors"), list):
            for err in payload["errors"]:
                if isinstance(err, dict) and err.get("message"):
                    return err["message"]
        return super()._error_message(payload, default)

    def _token_request(self, form):
        payload = self._call(
            "POST",
            UPSTOX_TOKEN_URL,
            auth=False,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data=form,
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise BrokerAPIError("Upstox returned no access token", 502, payload)
        return {
            "Access Token": access_token,
            "Refresh Token": payload.get("refresh_token"),
        }

    # ------------------------------------------------------------------
    def authorize_url(self, state, redirect_uri=None):
        self.require("API Key")
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.credential("API Key"),
                "redirect_uri": redirect_uri or UPSTOX_REDIRECT_URI,
                "state": state,
            }
        )
        return f"{UPSTOX_AUTH_URL}?{query}"

    def exchange_code(self, code, redirect_uri=None):
        self.require("API Key", "Secret Key")
        tokens = self._token_request(
            {
                "code": code,
                "client_id": self.credential("API Key"),
                "client_secret": self.credential("Secret Key"),
                "redirect_uri": redirect_uri or UPSTOX_REDIRECT_URI,
                "grant_type": "authorization_code",
            }
        )
        self.apply_tokens(tokens)
        return tokens

    def refresh_access_token(self):
        self.require("API Key", "Secret Key", "Refresh Token")
        tokens = self._token_request(
            {
                "refresh_token": self.refresh_token,
                "client_id": self.credential("API Key"),
                "client_secret": self.credential("Secret Key"),
                "grant_type": "refresh_token",
            }
        )
        tokens["Refresh Token"] = tokens["Refresh Token"] or self.refresh_token
        return tokens

    def verify(self):
        self.require("Access Token")
        return self._call("GET", "/user/profile")

    def get_funds(self):
        self.require("Access Token")
        return self._call("GET", "/user/get-funds-and-margin")

    def get_positions(self):
        self.require("Access Token")
        return self._call("GET", "/portfolio/short-term-positions")

    def place_order(self, order_details):
        self.require("Access Token")
        details = order_details or {}
        instrument_key = details.get("instrument_key")
        side = details.get("transaction_type")
        quantity = details.get("quantity")
        if not instrument_key or not side or not quantity:
            raise BrokerAPIError(
                "instrument_key, transaction_type and quantity are required", 400
            )

        order_type = str(details.get("order_type") or "MARKET").upper()
        if order_type not in self.ORDER_TYPES:
            raise BrokerAPIError(f"Unsupported Upstox order type: {order_type}", 400)
        price = self.to_number(details.get("price") or 0, float, "price")
        trigger_price = self.to_number(details.get("trigger_price") or 0, float, "trigger_price")
        if order_type in ("LIMIT", "SL") and price <= 0:
            raise BrokerAPIError(f"price is required for {order_type} orders", 400)
        if order_type in ("SL", "SL-M") and trigger_price <= 0:
            raise BrokerAPIError(
                f"trigger_price is required for {order_type} orders", 400
            )

        product = str(details.get("product_type") or details.get("product") or "INTRADAY").upper()
        # Upstox product codes: I intraday, D delivery
        product = {"INTRADAY": "I", "MIS": "I", "DELIVERY": "D", "CNC": "D"}.get(product, product)

        order = {
            "instrument_key": instrument_key,
            "quantity": self.to_number(quantity, int, "quantity"),
            "product": product,
            "transaction_type": str(side).upper(),
            "order_type": order_type,
            "price": price,
            "trigger_price": trigger_price,
            "validity": details.get("validity", "DAY"),
            "disclosed_quantity": 0,
            "is_amo": False,
        }
        return self._call("POST", "/order/place", json=order)

    def cancel_order(self, order_id, **kwargs):
        self.require("Access Token")
        return self._call("DELETE", "/order/cancel", params={"order_id": str(order_id)})
