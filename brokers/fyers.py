from .base import BrokerBase, BrokerAPIError, BrokerAuthError
import hashlib
import logging
import os
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

FYERS_API_URL = os.environ.get("FYERS_API_URL", "https://api-t1.fyers.in/api/v3")
FYERS_AUTH_URL = os.environ.get("FYERS_AUTH_URL", f"{FYERS_API_URL}/generate-authcode")
FYERS_TOKEN_URL = os.environ.get("FYERS_TOKEN_URL", f"{FYERS_API_URL}/validate-authcode")
FYERS_REFRESH_URL = os.environ.get(
    "FYERS_REFRESH_URL", f"{FYERS_API_URL}/validate-refresh-token"
)
FYERS_REDIRECT_URI = os.environ.get(
    "FYERS_REDIRECT_URI", "https://www.algoz.tech/api/brokers/fyers/callback"
)

# Fyers error codes meaning the token is invalid or expired
AUTH_ERROR_CODES = {-8, -15, -16, -17}


class FyersBroker(BrokerBase):
    BROKER = "fyers"
    DISPLAY_NAME = "Fyers"
    API_BASE = FYERS_API_URL
    SUPPORTS_OAUTH = True
    AUTH_STATUSES = (401, 403)

    ORDER_TYPES = {"LIMIT": 1, "MARKET": 2, "SL-M": 3, "SL": 4}
    PRODUCT_TYPES = {"INTRADAY", "CNC", "MARGIN", "BO", "CO"}

    def _normalize_product_type(self, product_type):
        """Fyers expects INTRADAY, CNC, MARGIN, BO or CO."""
        if not product_type:
            return "INTRADAY"
        pt = str(product_type).upper()
        if pt in self.PRODUCT_TYPES:
            return pt
        mapping = {
            "MIS": "INTRADAY",
            "NRML": "MARGIN",
            "NORMAL": "MARGIN",
            "DELIVERY": "CNC",
        }
        return mapping.get(pt, pt)

    def _normalize_order_type(self, order_type):
        if isinstance(order_type, int):
            return order_type
        ot = str(order_type or "MARKET").upper()
        aliases = {"MKT": "MARKET", "L": "LIMIT", "STOP": "SL", "STOP_MARKET": "SL-M"}
        ot = aliases.get(ot, ot)
        if ot not in self.ORDER_TYPES:
            raise BrokerAPIError(f"Unsupported Fyers order type: {order_type}", 400)
        return self.ORDER_TYPES[ot]

    @property
    def app_id(self):
        return self.credential("App ID", "API Key")

    def _app_id_hash(self):
        self.require("App ID", "Secret Key")
        raw = f"{self.app_id}:{self.credential('Secret Key')}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def _auth_headers(self):
        if not self.access_token:
            return {}
        return {"Authorization": f"{self.app_id}:{self.access_token}"}

    def _check_payload(self, payload):
        if isinstance(payload, dict) and payload.get("s") == "error":
            message = payload.get("message") or "Fyers API error"
            if payload.get("code") in AUTH_ERROR_CODES:
                raise BrokerAuthError(message, 401, payload)
            raise BrokerAPIError(message, 400, payload)

    def _token_set(self, payload):
        access_token = payload.get("access_token")
        if not access_token:
            raise BrokerAPIError("Fyers returned no access token", 502, payload)
        return {
            "Access Token": access_token,
            "Refresh Token": payload.get("refresh_token"),
        }

    # ------------------------------------------------------------------
    def authorize_url(self, state, redirect_uri=None):
        self.require("App ID")
        query = urlencode(
            {
                "client_id": self.app_id,
                "redirect_uri": redirect_uri or FYERS_REDIRECT_URI,
                "response_type": "code",
                "state": state,
            }
        )
        return f"{FYERS_AUTH_URL}?{query}"

    def exchange_code(self, code, redirect_uri=None):
        payload = self._call(
            "POST",
            FYERS_TOKEN_URL,
            auth=False,
            json={
                "grant_type": "authorization_code",
                "appIdHash": self._app_id_hash(),
                "code": code,
            },
        )
        tokens = self._token_set(payload)
        self.apply_tokens(tokens)
        return tokens

    def refresh_access_token(self):
        self.require("Refresh Token")
        body = {
            "grant_type": "refresh_token",
            "appIdHash": self._app_id_hash(),
            "refresh_token": self.refresh_token,
        }
        pin = self.credential("PIN", "Pin")
        if pin:
            body["pin"] = str(pin)
        payload = self._call("POST", FYERS_REFRESH_URL, auth=False, json=body)
        tokens = self._token_set(payload)
        # the refresh endpoint only issues a new access token
        tokens["Refresh Token"] = tokens["Refresh Token"] or self.refresh_token
        return tokens

    def verify(self):
        self.require("App ID", "Access Token")
        return self._call("GET", "/profile")

    def get_funds(self):
        self.require("App ID", "Access Token")
        return self._call("GET", "/funds")

    def get_positions(self):
        self.require("App ID", "Access Token")
        positions = self._call("GET", "/positions")
        try:
            holdings = self._call("GET", "/holdings")
        except BrokerAuthError:
            raise
        except BrokerAPIError as exc:
            logger.warning(
                "Fyers holdings unavailable: %s", exc.message,
                extra={"broker": self.BROKER},
            )
            holdings = None
        return {"positions": positions, "holdings": holdings}

    def place_order(self, order_details):
        self.require("App ID", "Access Token")
        details = order_details or {}
        symbol = details.get("symbol")
        side = details.get("transactionType") or details.get("side")
        quantity = details.get("quantity") or details.get("qty")
        if not symbol or not side or not quantity:
            raise BrokerAPIError("symbol, transactionType and quantity are required", 400)

        if isinstance(side, int):
            side_code = side
        else:
            side_code = 1 if str(side).upper() == "BUY" else -1
        order = {
            "symbol": symbol,
            "qty": self.to_number(quantity, int, "quantity"),
            "type": self._normalize_order_type(details.get("orderType")),
            "side": side_code,
            "productType": self._normalize_product_type(details.get("productType")),
            "limitPrice": self.to_number(details.get("price") or 0, float, "price"),
            "stopPrice": self.to_number(details.get("triggerPrice") or 0, float, "triggerPrice"),
            "validity": details.get("validity", "DAY"),
            "disclosedQty": 0,
            "offlineOrder": False,
        }
        return self._call("POST", "/orders/sync", json=order)

    def cancel_order(self, order_id, **kwargs):
        self.require("App ID", "Access Token")
        return self._call("DELETE", "/orders/sync", json={"id": str(order_id)})
