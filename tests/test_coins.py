from models import CoinTransaction, ServiceUsage, User, db
from services import coins


def _grant(user, amount):
    coins.add_transaction(user.id, amount, "recharge", "test grant", reference="order_x")
    db.session.commit()


def test_check_service_coins(client, user, login):
    _grant(user, 60)
    login(user)
    resp = client.post("/api/check-service-coins", json={"service": "backtest"})
    assert resp.get_json() == {"service": "backtest", "cost": 50, "balance": 60, "sufficient": True}

    resp = client.post("/api/check-service-coins", json={"service": "optimisation"})
    assert resp.get_json()["sufficient"] is False


def test_unknown_service_lists_valid_ones(client, user, login):
    login(user)
    resp = client.post("/api/check-service-coins", json={"service": "moon"})
    assert resp.status_code == 400
    assert resp.get_json()["details"]["validServices"] == ["backtest", "optimisation"]


def test_deduct_refuses_when_balance_short(client, user, login):
    _grant(user, 40)
    login(user)
    resp = client.post("/api/deduct-service-coins", json={"service": "backtest"})
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Insufficient coins"
    assert ServiceUsage.query.count() == 0
    assert coins.get_balance(user.id) == 40


def test_deduct_records_ledger_and_usage(client, user, login):
    _grant(user, 120)
    login(user)
    resp = client.post("/api/deduct-service-coins", json={"service": "backtest"})
    assert resp.status_code == 200
    assert resp.get_json()["balance"] == 70

    spend = CoinTransaction.query.filter_by(transaction_type="service").one()
    assert spend.amount == -50
    assert ServiceUsage.query.one().coins == 50
    assert client.get("/api/coin-balance").get_json() == {"balance": 70}
    db.session.expire_all()
    assert db.session.get(User, user.id).coin_balance == 70


def test_transaction_history_newest_first(client, user, login):
    _grant(user, 100)
    _grant(user, 500)
    login(user)
    body = client.get("/api/coin-transaction-history").get_json()
    assert body["user_id"] == user.id
    assert [t["amount"] for t in body["transactions"]] == [500, 100]
    assert body["serviceUsage"] == []


def test_verify_coin_system_requires_admin(client, user, login):
    login(user)
    assert client.get("/api/admin/verify-coin-system").status_code == 403


def test_verify_coin_system_reports_mismatch(client, user, login):
    admin = User(email="admin@example.com", role="admin")
    db.session.add(admin)
    db.session.commit()
    _grant(user, 100)
    # drift the stored balance away from the ledger
    user = db.session.get(User, user.id)
    user.coin_balance = 130
    db.session.commit()
    login(admin)

    body = client.get("/api/admin/verify-coin-system").get_json()

    assert body["summary"] == {
        "totalUsers": 2,
        "inconsistentUsers": 1,
        "totalErrorAmount": 30,
        "systemHealthy": False,
    }
    row = next(u for u in body["users"] if u["email"] == "trader@example.com")
    assert row["calculatedBalance"] == 100
    assert row["storedBalance"] == 130
