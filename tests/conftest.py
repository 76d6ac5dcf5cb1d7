import os
import sys
import tempfile

# Ensure required environment variables before importing app
os.environ.setdefault("SECRET_KEY", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_COOKIE_SECURE", "0")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="algoz-test-"))
os.environ.setdefault("CASHFREE_APP_ID", "cf-app")
os.environ.setdefault("CASHFREE_SECRET_KEY", "cf-secret")
os.environ.setdefault("CASHFREE_WEBHOOK_SECRET", "whsec")
os.environ.setdefault("MIGRATE_ON_BOOT", "0")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

import app as app_module
from brokers.base import BrokerBase
from models import BrokerCredential, User, Webhook, db
from services.rate_limit import webhook_limiter


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


@pytest.fixture
def app():
    flask_app = app_module.app
    flask_app.config["TESTING"] = True
    webhook_limiter.reset()
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def user(app):
    u = User(email="trader@example.com", name="Trader", role="user")
    u.set_password("secret-pass")
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture
def login(client):
    def _login(u):
        with client.session_transaction() as sess:
            sess["user"] = u.id
        return client

    return _login


@pytest.fixture
def make_credential(user):
    def _make(broker_name="Angel One", credentials=None, **fields):
        fields.setdefault("is_active", True)
        cred = BrokerCredential(
            user_id=fields.pop("user_id", user.id),
            broker_name=broker_name,
            credentials=credentials if credentials is not None else {},
            **fields,
        )
        db.session.add(cred)
        db.session.commit()
        return cred

    return _make


@pytest.fixture
def webhook(user):
    hook = Webhook(user_id=user.id, name="tv", token="tok-abc", is_active=True)
    db.session.add(hook)
    db.session.commit()
    return hook


@pytest.fixture
def broker_http(monkeypatch):
    """Route broker HTTP calls through a list of queued responses.

    Every call is recorded as ``(method, url, kwargs)``.
    """

    calls = []
    responses = []

    def fake_request(self, method, url, **kwargs):
        calls.append((method, url, kwargs))
        if not responses:
            raise AssertionError(f"unexpected broker call {method} {url}")
        resp = responses.pop(0)
        if callable(resp):
            return resp(method, url, **kwargs)
        return resp

    monkeypatch.setattr(BrokerBase, "_request", fake_request, raising=False)
    return calls, responses
