import hashlib
from urllib.parse import parse_qs, urlparse

import pytest

from brokers.angelone import AngelOneBroker
from brokers.base import BrokerAPIError, BrokerAuthError, MissingCredentialsError
from brokers.dhan import DhanBroker
from brokers.factory import get_broker_class, normalize_broker_name
from brokers.fyers import FyersBroker
from brokers.upstox import UpstoxBroker
from conftest import DummyResponse
from models import BrokerCredential, db


@pytest.mark.parametrize(
    "name,expected",
    [("Angel One", "angelone"), ("angel_one", "angelone"), ("ANGEL-ONE", "angelone"), ("Fyers", "fyers")],
)
def test_normalize_broker_name(name, expected):
    assert normalize_broker_name(name) == expected


def test_get_broker_class():
    assert get_broker_class("Angel One") is AngelOneBroker
    assert get_broker_class("upstox") is UpstoxBroker
    with pytest.raises(ValueError):
        get_broker_class("zerodha")


def test_angelone_login_stores_tokens(broker_http):
    calls, responses = broker_http
    responses.append(
        DummyResponse(
            200,
            {"status": True, "data": {"jwtToken": "jwt", "feedToken": "feed", "refreshToken": "ref"}},
        )
    )
    broker = AngelOneBroker({"API Key": "key", "Client ID": "C1"})

    tokens = broker.authenticate()

    assert tokens == {"Access Token": "jwt", "Feed Token": "feed", "Refresh Token": "ref"}
    method, url, kwargs = calls[0]
    assert url.endswith("/loginByPassword")
    assert kwargs["json"] == {"clientcode": "C1"}
    assert kwargs["headers"]["X-PrivateKey"] == "key"
    assert "Authorization" not in kwargs["headers"]


def test_angelone_status_false_is_an_error(broker_http):
    _, responses = broker_http
    responses.append(DummyResponse(200, {"status": False, "message": "Invalid symbol", "errorcode": "AB1019"}))
    broker = AngelOneBroker({"API Key": "key", "Access Token": "jwt"})
    with pytest.raises(BrokerAPIError) as exc:
        broker.place_order({"symbol": "X", "order_side": "BUY", "quantity": 1})
    assert exc.value.status_code == 400
    assert exc.value.message == "Invalid symbol"


def test_angelone_invalid_token_code_is_auth_error(broker_http):
    _, responses = broker_http
    responses.append(DummyResponse(200, {"status": False, "message": "Invalid Token", "errorcode": "AG8001"}))
    with pytest.raises(BrokerAuthError):
        AngelOneBroker({"API Key": "key", "Access Token": "jwt"}).verify()


def test_angelone_cancel_payload(broker_http):
    calls, responses = broker_http
    responses.append(DummyResponse(200, {"status": True, "data": {"orderid": "1"}}))
    AngelOneBroker({"API Key": "key", "Access Token": "jwt"}).cancel_order("1", variety="STOPLOSS")
    assert calls[0][2]["json"] == {"variety": "STOPLOSS", "orderid": "1"}


def test_missing_credentials_raise_before_any_call(broker_http):
    calls, _ = broker_http
    with pytest.raises(MissingCredentialsError):
        UpstoxBroker({}).get_funds()
    assert calls == []


def test_fyers_order_codes(broker_http):
    calls, responses = broker_http
    responses.append(DummyResponse(200, {"s": "ok", "id": "1"}))
    broker = FyersBroker({"App ID": "APP-100", "Access Token": "tok"})

    broker.place_order(
        {"symbol": "NSE:SBIN-EQ", "transactionType": "SELL", "quantity": 1, "orderType": "SL-M", "triggerPrice": 10}
    )

    order = calls[0][2]["json"]
    assert order["side"] == -1
    assert order["type"] == 3
    assert order["stopPrice"] == 10.0
    assert calls[0][2]["headers"]["Authorization"] == "APP-100:tok"


def test_fyers_token_exchange_uses_app_id_hash(broker_http):
    calls, responses = broker_http
    responses.append(DummyResponse(200, {"s": "ok", "access_token": "at", "refresh_token": "rt"}))
    broker = FyersBroker({"App ID": "APP-100", "Secret Key": "sec"})

    tokens = broker.exchange_code("code-1")

    assert tokens == {"Access Token": "at", "Refresh Token": "rt"}
    body = calls[0][2]["json"]
    assert body["appIdHash"] == hashlib.sha256(b"APP-100:sec").hexdigest()
    assert body["code"] == "code-1"


def test_fyers_positions_tolerate_missing_holdings(broker_http):
    _, responses = broker_http
    responses.extend(
        [
            DummyResponse(200, {"s": "ok", "netPositions": []}),
            DummyResponse(500, {"s": "error", "message": "down"}),
        ]
    )
    result = FyersBroker({"App ID": "A", "Access Token": "t"}).get_positions()
    assert result["positions"] == {"s": "ok", "netPositions": []}
    assert result["holdings"] is None


@pytest.mark.parametrize(
    "details",
    [
        {"order_type": "LIMIT"},
        {"order_type": "SL", "price": 100},
        {"order_type": "SL-M"},
        {"order_type": "ICEBERG"},
    ],
)
def test_upstox_order_type_validation(details, broker_http):
    calls, _ = broker_http
    base = {"instrument_key": "NSE_EQ|X", "transaction_type": "BUY", "quantity": 1}
    with pytest.raises(BrokerAPIError) as exc:
        UpstoxBroker({"Access Token": "t"}).place_order({**base, **details})
    assert exc.value.status_code == 400
    assert calls == []


def test_upstox_cancel_uses_query_param(broker_http):
    calls, responses = broker_http
    responses.append(DummyResponse(200, {"status": "success"}))
    UpstoxBroker({"Access Token": "t"}).cancel_order("OID-1")
    method, url, kwargs = calls[0]
    assert method == "DELETE"
    assert url.endswith("/order/cancel")
    assert kwargs["params"] == {"order_id": "OID-1"}


def test_dhan_headers_and_expiry(broker_http):
    calls, responses = broker_http
    responses.append(DummyResponse(200, {"access_token": "dt"}))
    broker = DhanBroker({"Client ID": "1100"})

    tokens = broker.exchange_code("abc")

    assert tokens["Access Token"] == "dt"
    assert tokens["Expires In"] == 86400
    assert calls[0][2]["json"]["grant_type"] == "authorization_code"

    responses.append(DummyResponse(200, {"dhanClientId": "1100"}))
    broker.verify()
    headers = calls[1][2]["headers"]
    assert headers["client-id"] == "1100"
    assert headers["access-token"] == "dt"


def test_non_json_error_body_is_wrapped(broker_http):
    _, responses = broker_http
    responses.append(DummyResponse(502, None, text="<html>bad gateway</html>"))
    with pytest.raises(BrokerAPIError) as exc:
        UpstoxBroker({"Access Token": "t"}).get_positions()
    assert exc.value.status_code == 502
    assert exc.value.payload["rawResponse"] == "<html>bad gateway</html>"


def test_oauth_start_and_callback(client, user, login, make_credential, broker_http):
    _, responses = broker_http
    cred = make_credential("Upstox", {"API Key": "up-key", "Secret Key": "s"}, is_active=False)
    login(user)

    start = client.post("/api/brokers/upstox/oauth", json={"broker_id": cred.id})
    assert start.status_code == 200
    redirect = urlparse(start.get_json()["redirect_url"])
    state = parse_qs(redirect.query)["state"][0]
    assert parse_qs(redirect.query)["client_id"] == ["up-key"]

    responses.append(DummyResponse(200, {"access_token": "fresh", "refresh_token": "r"}))
    cb = client.get(f"/api/brokers/upstox/callback?code=xyz&state={state}")

    assert cb.status_code == 200
    assert b"UPSTOX_AUTH_SUCCESS" in cb.data
    db.session.expire_all()
    cred = db.session.get(BrokerCredential, cred.id)
    assert cred.is_active is True
    assert cred.is_pending_auth is False
    assert cred.auth_state is None
    assert cred.access_token == "fresh"


def test_callback_with_unknown_state_fails(client, make_credential):
    resp = client.get("/api/brokers/fyers/callback?code=x&state=unknown")
    assert resp.status_code == 400
    assert b"FYERS_AUTH_FAILURE" in resp.data


def test_oauth_not_offered_for_angelone(client, user, login, make_credential):
    cred = make_credential("Angel One", {"API Key": "k", "Client ID": "c"})
    login(user)
    resp = client.post("/api/brokers/angelone/oauth", json={"broker_id": cred.id})
    assert resp.status_code == 400


def test_create_and_list_masks_secrets(client, user, login):
    login(user)
    created = client.post(
        "/api/brokers",
        json={"broker_name": "Angel One", "credentials": {"API Key": "k", "Access Token": "abcdefghijkl"}},
    )
    assert created.status_code == 201
    listing = client.get("/api/brokers").get_json()["brokers"]
    assert listing[0]["credentials"]["Access Token"] == "abcd****"
    assert listing[0]["is_active"] is False

    bad = client.post("/api/brokers", json={"broker_name": "Zerodha", "credentials": {}})
    assert bad.status_code == 400
    assert client.post("/api/brokers", json={"credentials": {}}).status_code == 400


def test_authenticate_route_marks_active(client, user, login, make_credential, broker_http):
    _, responses = broker_http
    cred = make_credential("Angel One", {"API Key": "k", "Client ID": "C1"}, is_active=False)
    responses.append(DummyResponse(200, {"status": True, "data": {"jwtToken": "jwt", "refreshToken": "r"}}))
    login(user)

    resp = client.post("/api/brokers/angelone/authenticate", json={"broker_id": cred.id})

    assert resp.status_code == 200
    db.session.expire_all()
    cred = db.session.get(BrokerCredential, cred.id)
    assert cred.is_active is True
    assert cred.access_token == "jwt"
