import logging
import os

from .base import BrokerBase, BrokerAPIError, BrokerAuthError

logger = logging.getLogger(__name__)

ANGELONE_API_URL = os.environ.get("ANGELONE_API_URL", "https://apiconnect.angelone.in")


class AngelOneBroker(BrokerBase):
    """SmartAPI adapter.

    AngelOne logs in directly with the client code, so there is no OAuth
    leg.  The JWT goes into ``Authorization`` and the API key into
    ``X-PrivateKey``.
    """

    BROKER = "angelone"
    DISPLAY_NAME = "AngelOne"
    API_BASE = ANGELONE_API_URL
    AUTH_STATUSES = (401, 403)

    LOGIN_PATH = "/rest/auth/angelbroking/user/v1/loginByPassword"
    REFRESH_PATH = "/rest/auth/angelbroking/jwt/v1/generateTokens"
    PROFILE_PATH = "/rest/secure/angelbroking/user/v1/getProfile"
    RMS_PATH = "/rest/secure/angelbroking/user/v1/getRMS"
    POSITIONS_PATH = "/rest/secure/angelbroking/order/v1/getPosition"
    PLACE_ORDER_PATH = "/rest/secure/angelbroking/order/v1/placeOrder"
    CANCEL_ORDER_PATH = "/rest/secure/angelbroking/order/v1/cancelOrder"

    def _client_headers(self):
        return {
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00:00:00:00:00:00",
            "X-PrivateKey": self.credential("API Key") or "",
        }

    def _auth_headers(self):
        headers = self._client_headers()
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _check_payload(self, payload):
        # SmartAPI reports most failures as HTTP 200 with ``status: false``
        if isinstance(payload, dict) and payload.get("status") is False:
            code = str(payload.get("errorcode") or "")
            message = payload.get("message") or "AngelOne API error"
            if code.startswith("AG80") or "token" in message.lower():
                raise BrokerAuthError(message, 401, payload)
            raise BrokerAPIError(message, 400, payload)

    @staticmethod
    def _tokens_from(payload):
        data = payload.get("data") or {}
        return {
            "Access Token": data.get("jwtToken"),
            "Feed Token": data.get("feedToken"),
            "Refresh Token": data.get("refreshToken"),
        }

    def authenticate(self):
        self.require("API Key", "Client ID")
        body = {"clientcode": self.credential("Client ID")}
        password = self.credential("Password", "PIN", "MPIN")
        if password:
            body["password"] = password
        totp = self.credential("TOTP")
        if totp:
            body["totp"] = totp

        payload = self._call(
            "POST", self.LOGIN_PATH, auth=False,
            headers=self._client_headers(), json=body,
        )
        tokens = self._tokens_from(payload)
        if not tokens["Access Token"]:
            raise BrokerAPIError("AngelOne login returned no token", 502, payload)
        self.apply_tokens(tokens)
        logger.info("AngelOne login succeeded", extra={"broker": self.BROKER})
        return tokens

    def refresh_access_token(self):
        self.require("API Key", "Refresh Token")
        payload = self._call(
            "POST", self.REFRESH_PATH, auth=True,
            json={"refreshToken": self.refresh_token},
        )
        tokens = self._tokens_from(payload)
        if not tokens["Access Token"]:
            raise BrokerAPIError("AngelOne refresh returned no token", 502, payload)
        return tokens

    def verify(self):
        self.require("API Key", "Access Token")
        return self._call("GET", self.PROFILE_PATH)

    def get_funds(self):
        self.require("API Key", "Access Token")
        return self._call("GET", self.RMS_PATH)

    def get_positions(self):
        self.require("API Key", "Access Token")
        return self._call("GET", self.POSITIONS_PATH)

    def place_order(self, order_details):
        self.require("API Key", "Access Token")
        details = order_details or {}
        symbol = details.get("symbol") or details.get("tradingsymbol")
        side = details.get("order_side") or details.get("transactiontype")
        quantity = details.get("quantity")
        if not symbol or not side or not quantity:
            raise BrokerAPIError("symbol, order_side and quantity are required", 400)

        order = {
            "variety": details.get("variety", "NORMAL"),
            "tradingsymbol": symbol,
            "symboltoken": str(details.get("token") or details.get("symboltoken") or ""),
            "transactiontype": str(side).upper(),
            "exchange": details.get("exchange", "NSE"),
            "ordertype": str(details.get("order_type") or "MARKET").upper(),
            "producttype": str(details.get("product") or "INTRADAY").upper(),
            "duration": details.get("duration", "DAY"),
            "price": str(details.get("price") or "0"),
            "squareoff": "0",
            "stoploss": "0",
            "quantity": str(quantity),
        }
        payload = self._call("POST", self.PLACE_ORDER_PATH, json=order)
        data = payload.get("data") or {}
        if isinstance(data, dict) and data.get("orderid") and not data.get("order_id"):
            # normalise so callers find the id under ``data.order_id``
            payload["data"] = dict(data, order_id=data["orderid"])
        return payload

    def cancel_order(self, order_id, variety="NORMAL", **kwargs):
        self.require("API Key", "Access Token")
        return self._call(
            "POST", self.CANCEL_ORDER_PATH,
            json={"variety": variety or "NORMAL", "orderid": str(order_id)},
        )
