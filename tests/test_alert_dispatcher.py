import pytest

from blueprints import webhooks as webhooks_bp_module
from conftest import DummyResponse
from models import BrokerCredential, Webhook, WebhookLog, db
from services.alert_dispatcher import build_order_request, normalize_action, validate_alert
from services.errors import BadRequest
from services.rate_limit import _FixedWindowLimiter

URL = "/api/webhook/trading-view/tok-abc"
ANGEL_CREDS = {"API Key": "angel-key", "Client ID": "C1", "Access Token": "jwt-1"}


def test_missing_fields_rejected_without_log(client, webhook):
    resp = client.post(URL, json={"symbol": "SBIN-EQ", "action": "BUY"})
    assert resp.status_code == 400
    assert WebhookLog.query.count() == 0


def test_zero_quantity_counts_as_missing(client, webhook):
    resp = client.post(URL, json={"symbol": "SBIN-EQ", "action": "BUY", "quantity": 0})
    assert resp.status_code == 400


def test_invalid_json_rejected(client, webhook):
    resp = client.post(URL, data="not json", content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid JSON payload"


def test_unknown_token_is_unauthorized(client, webhook):
    resp = client.post("/api/webhook/trading-view/nope", json={})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Invalid webhook token"


def test_inactive_webhook_is_forbidden(client, webhook):
    webhook.is_active = False
    db.session.commit()
    resp = client.post(URL, json={"symbol": "X", "action": "BUY", "quantity": 1})
    assert resp.status_code == 403


def test_sixth_request_in_window_is_rate_limited(client, webhook, monkeypatch):
    now = [1000.0]
    limiter = _FixedWindowLimiter(5, 60, clock=lambda: now[0])
    monkeypatch.setattr(webhooks_bp_module, "webhook_limiter", limiter)

    statuses = [client.post(URL, json={}).status_code for _ in range(6)]
    assert statuses[:5] == [400] * 5
    assert statuses[5] == 429

    now[0] += 61
    assert client.post(URL, json={}).status_code == 400


def test_no_active_broker_is_queued(client, webhook, make_credential):
    make_credential("Angel One", ANGEL_CREDS, is_active=False)
    resp = client.post(URL, json={"symbol": "SBIN-EQ", "action": "buy", "quantity": 1})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["queued"] is True
    assert body["error"] == "No active broker found"
    log = WebhookLog.query.one()
    assert log.status == "failed"
    assert log.error_message == "No active broker found"


def test_usage_is_recorded(client, webhook):
    client.post(URL, json={"symbol": "SBIN-EQ", "action": "buy", "quantity": 1})
    hook = db.session.get(Webhook, webhook.id)
    assert hook.request_count == 1
    assert hook.last_used_at is not None


def test_unsupported_broker_is_rejected_without_call(client, webhook, make_credential, broker_http):
    calls, _ = broker_http
    make_credential("Dhan", {"Client ID": "D1", "Access Token": "t"})
    resp = client.post(URL, json={"symbol": "SBIN", "action": "BUY", "quantity": 1})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Unsupported broker: Dhan"
    assert calls == []
    assert WebhookLog.query.count() == 0


def test_angelone_alert_places_buy_order(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Angel One", ANGEL_CREDS)
    responses.append(
        DummyResponse(200, {"status": True, "message": "SUCCESS", "data": {"orderid": "A-123"}})
    )

    resp = client.post(URL, json={"symbol": "SBIN-EQ", "action": "buy", "quantity": 5})

    assert resp.status_code == 200
    assert resp.get_json() == {
        "success": True,
        "message": "Order submitted successfully",
        "order_id": "A-123",
        "broker": "angelone",
    }
    method, url, kwargs = calls[0]
    assert method == "POST"
    assert url.endswith("/order/v1/placeOrder")
    assert kwargs["json"]["transactiontype"] == "BUY"
    assert kwargs["json"]["tradingsymbol"] == "SBIN-EQ"
    assert kwargs["json"]["quantity"] == "5"
    assert WebhookLog.query.one().status == "success"


def test_fyers_alert_places_buy_order(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Fyers", {"App ID": "APP-100", "Secret Key": "s", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"s": "ok", "id": "F-9"}))

    resp = client.post(URL, json={"symbol": "NSE:SBIN-EQ", "action": "Buy", "quantity": "2"})

    assert resp.status_code == 200
    assert resp.get_json()["order_id"] == "F-9"
    assert resp.get_json()["broker"] == "fyers"
    order = calls[0][2]["json"]
    assert order["side"] == 1
    assert order["type"] == 2
    assert order["qty"] == 2


def test_upstox_alert_places_sell_for_non_buy(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Upstox", {"API Key": "k", "Secret Key": "s", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"status": "success", "data": {"order_id": "U-1"}}))

    resp = client.post(
        URL, json={"symbol": "NSE_EQ|INE062A01020", "action": "exit", "quantity": 3}
    )

    assert resp.status_code == 200
    assert resp.get_json()["order_id"] == "U-1"
    order = calls[0][2]["json"]
    assert order["transaction_type"] == "SELL"
    assert order["instrument_key"] == "NSE_EQ|INE062A01020"


def test_most_recent_active_broker_is_used(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Angel One", ANGEL_CREDS)
    make_credential("Upstox", {"API Key": "k", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"status": "success", "data": {"order_id": "U-2"}}))

    resp = client.post(URL, json={"symbol": "NSE_EQ|X", "action": "BUY", "quantity": 1})

    assert resp.get_json()["broker"] == "upstox"
    assert calls[0][1].endswith("/order/place")


def test_broker_failure_returns_broker_status(client, webhook, make_credential, broker_http):
    _, responses = broker_http
    make_credential("Upstox", {"API Key": "k", "Access Token": "tok"})
    error_body = {"status": "error", "errors": [{"message": "Insufficient funds"}]}
    responses.append(DummyResponse(400, error_body))

    resp = client.post(URL, json={"symbol": "NSE_EQ|X", "action": "BUY", "quantity": 1})

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Failed to place order with broker"
    assert body["details"] == error_body
    log = WebhookLog.query.one()
    assert log.status == "failed"
    assert log.error_message == "Insufficient funds"


def test_order_id_falls_back_to_unknown(client, webhook, make_credential, broker_http):
    _, responses = broker_http
    make_credential("Upstox", {"API Key": "k", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"status": "success", "data": {}}))

    resp = client.post(URL, json={"symbol": "NSE_EQ|X", "action": "BUY", "quantity": 1})

    assert resp.get_json()["order_id"] == "unknown"


@pytest.mark.parametrize("raw,expected", [("buy", "BUY"), ("BUY", "BUY"), ("sell", "SELL"), ("close", "SELL")])
def test_normalize_action(raw, expected):
    assert normalize_action(raw) == expected


def test_build_order_request_defaults():
    alert = {"symbol": "SBIN-EQ", "action": "buy", "quantity": 1}
    request = build_order_request("angel_one", 7, alert)
    assert request == {
        "broker_id": 7,
        "order_details": {
            "symbol": "SBIN-EQ",
            "order_side": "BUY",
            "quantity": 1,
            "order_type": "MARKET",
            "price": "0",
            "product": "INTRADAY",
        },
    }


def test_build_order_request_rejects_unknown_broker():
    with pytest.raises(BadRequest) as exc:
        build_order_request("Zerodha", 1, {"symbol": "X", "action": "BUY", "quantity": 1})
    assert exc.value.message == "Unsupported broker: Zerodha"


def test_fyers_alert_honours_order_fields(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Fyers", {"App ID": "APP-100", "Secret Key": "s", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"s": "ok", "id": "F-10"}))

    resp = client.post(
        URL,
        json={
            "symbol": "NSE:SBIN-EQ",
            "action": "BUY",
            "quantity": 1,
            "orderType": "SL",
            "price": 500,
            "productType": "CNC",
            "triggerPrice": 495,
        },
    )

    assert resp.status_code == 200
    order = calls[0][2]["json"]
    assert order["type"] == 4
    assert order["productType"] == "CNC"
    assert order["limitPrice"] == 500.0
    assert order["stopPrice"] == 495.0


def test_upstox_alert_honours_order_fields(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Upstox", {"API Key": "k", "Access Token": "tok"})
    responses.append(DummyResponse(200, {"status": "success", "data": {"order_id": "U-3"}}))

    resp = client.post(
        URL,
        json={
            "symbol": "NSE_EQ|X",
            "action": "BUY",
            "quantity": 4,
            "orderType": "LIMIT",
            "price": 101.5,
            "productType": "CNC",
        },
    )

    assert resp.status_code == 200
    order = calls[0][2]["json"]
    assert order["order_type"] == "LIMIT"
    assert order["price"] == 101.5
    assert order["product"] == "D"


def test_angelone_alert_honours_order_fields(client, webhook, make_credential, broker_http):
    calls, responses = broker_http
    make_credential("Angel One", ANGEL_CREDS)
    responses.append(DummyResponse(200, {"status": True, "data": {"orderid": "A-9"}}))

    resp = client.post(
        URL,
        json={
            "symbol": "SBIN-EQ",
            "action": "SELL",
            "quantity": 2,
            "orderType": "LIMIT",
            "price": 610,
            "productType": "DELIVERY",
        },
    )

    assert resp.status_code == 200
    order = calls[0][2]["json"]
    assert order["ordertype"] == "LIMIT"
    assert order["price"] == "610"
    assert order["producttype"] == "DELIVERY"


def test_snake_case_order_fields_win_over_camel_case():
    alert = validate_alert(
        {"symbol": "X", "action": "BUY", "quantity": 1, "order_type": "LIMIT", "orderType": "SL"}
    )
    assert alert["order_type"] == "LIMIT"
    assert "orderType" not in alert


@pytest.mark.parametrize("field,value", [("quantity", "ten"), ("price", "abc")])
def test_non_numeric_order_field_is_logged_as_failed(
    client, webhook, make_credential, broker_http, field, value
):
    calls, _ = broker_http
    make_credential("Fyers", {"App ID": "APP-100", "Secret Key": "s", "Access Token": "tok"})
    alert = {"symbol": "NSE:SBIN-EQ", "action": "BUY", "quantity": 1, "orderType": "LIMIT"}
    alert[field] = value

    resp = client.post(URL, json=alert)

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Failed to place order with broker"
    assert calls == []
    log = WebhookLog.query.one()
    assert log.status == "failed"
    assert log.error_message == f"Invalid {field}: {value!r}"
