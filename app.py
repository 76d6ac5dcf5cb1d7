import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, Response, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_talisman import Talisman
from flask_wtf import CSRFProtect
from marshmallow import ValidationError
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from werkzeug.exceptions import HTTPException

from blueprints.auth import auth_bp
from blueprints.brokers import brokers_bp
from blueprints.coins import coins_bp
from blueprints.payments import payments_bp
from blueprints.webhooks import webhooks_bp
from models import db
from services.db import sqlalchemy_url
from services.errors import ApiError

app = Flask(__name__)
secret_key = os.environ.get("SECRET_KEY")
if not secret_key:
    raise RuntimeError("SECRET_KEY environment variable is required")
app.secret_key = secret_key
CORS(app, supports_credentials=True)
session_cookie_secure = os.environ.get("SESSION_COOKIE_SECURE", "1") == "1"
app.config.update(
    SESSION_COOKIE_SECURE=session_cookie_secure,
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
)
app.config["WTF_CSRF_TIME_LIMIT"] = None
csrf = CSRFProtect(app)
# JSON only back end; the OAuth callback page needs its inline script
csp = {
    "default-src": ["'self'"],
    "script-src": ["'self'", "'unsafe-inline'"],
}
Talisman(
    app,
    content_security_policy=csp,
    force_https=os.environ.get("FORCE_HTTPS") == "1",
    session_cookie_secure=session_cookie_secure,
)
# Configure rate limiting with a pluggable storage backend.
# Set ``LIMITER_STORAGE_URL`` to a Redis URI in production to share limits across instances.
limiter_storage = os.environ.get("LIMITER_STORAGE_URL", "memory://")
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=["20000 per day", "1000 per hour"],
    storage_uri=limiter_storage,
)
# Persist data in a configurable directory. By default this is ``./data`` so
# that files survive across redeploys.
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", os.path.join(BASE_DIR, "data"))
os.makedirs(DATA_DIR, exist_ok=True)


class BrokerErrorFormatter(logging.Formatter):
    """Formatter that renders optional ``broker`` and ``error`` fields."""

    def format(self, record):
        record.broker = getattr(record, "broker", "")
        record.error = getattr(record, "error", "")
        return super().format(record)


# Setup basic logging
log_path = os.path.join(DATA_DIR, "app.log")
log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=10)
formatter = BrokerErrorFormatter(
    "%(asctime)s [%(levelname)s] %(name)s: %(message)s broker=%(broker)s error=%(error)s"
)
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    handlers=[logging.StreamHandler(), file_handler],
)
for handler in logging.getLogger().handlers:
    handler.setFormatter(formatter)

logger = logging.getLogger(__name__)

app.config["SQLALCHEMY_DATABASE_URI"] = sqlalchemy_url(
    os.environ.get("DATABASE_URL", "sqlite:///app.db")
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}

db.init_app(app)
migrate = Migrate(app, db)
for bp in (auth_bp, brokers_bp, webhooks_bp, payments_bp, coins_bp):
    app.register_blueprint(bp)
    csrf.exempt(bp)


@app.errorhandler(ApiError)
def handle_api_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(ValidationError)
def handle_validation_error(exc):
    return jsonify({"error": "Invalid request", "details": exc.messages}), 400


@app.errorhandler(Exception)
def handle_unexpected_error(exc):
    if isinstance(exc, HTTPException):
        return jsonify({"error": exc.description}), exc.code
    db.session.rollback()
    logger.exception("Unhandled error", extra={"error": str(exc)})
    return jsonify({"error": "Internal server error"}), 500


@app.route("/healthz")
@limiter.exempt
def healthz():
    return jsonify({"status": "ok"})


@app.route("/metrics")
@limiter.exempt
def metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    debug = os.environ.get("FLASK_DEBUG") == "1"
    app.run(debug=debug)
