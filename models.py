from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
from sqlalchemy import event
from sqlalchemy.orm.attributes import set_committed_value

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=True)
    name = db.Column(db.String(120))
    phone = db.Column(db.String(20))
    role = db.Column(db.String(20), default="user", nullable=False)
    # Denormalised running total of ``CoinTransaction.amount``. Written in the
    # same transaction as every ledger row; the admin integrity check compares
    # the two.
    coin_balance = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"

    def __repr__(self):
        return f"<User {self.email}>"


class BrokerCredential(db.Model):
    __tablename__ = "broker_credentials"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    broker_name = db.Column(db.String(50), nullable=False, index=True)
    # Provider specific key names, e.g. "API Key", "Access Token", "Refresh Token"
    credentials = db.Column(db.JSON, default=dict)
    access_token = db.Column(db.Text)
    token_expiry = db.Column(db.DateTime(timezone=True))

    is_active = db.Column(db.Boolean, default=False, nullable=False, index=True)
    is_pending_auth = db.Column(db.Boolean, default=False, nullable=False)
    auth_state = db.Column(db.String(64), index=True)
    redirect_url = db.Column(db.String(255))

    session_active = db.Column(db.Boolean, default=False, nullable=False, index=True)
    last_activity = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship(
        "User",
        backref=db.backref("broker_credentials", lazy=True, cascade="all, delete-orphan"),
    )

    __table_args__ = (
        db.Index("idx_broker_user_active", "user_id", "is_active", "created_at"),
        db.Index("idx_broker_session_sync", "is_active", "session_active"),
    )

    def update_credentials(self, **values):
        """Merge ``values`` into the JSON credential bundle.

        JSON columns are not mutation tracked, so a fresh dict is assigned.
        """
        merged = dict(self.credentials or {})
        merged.update(values)
        self.credentials = merged

    def deactivate(self):
        """Clear the active flag together with the session flag."""
        self.is_active = False
        self.session_active = False
        self.is_pending_auth = False
        self.auth_state = None
        self.last_activity = _utcnow()

    def __repr__(self):
        return f"<BrokerCredential {self.id} {self.broker_name}>"


class Webhook(db.Model):
    __tablename__ = "webhooks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    name = db.Column(db.String(120))
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    request_count = db.Column(db.Integer, default=0, nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship(
        "User",
        backref=db.backref("webhooks", lazy=True, cascade="all, delete-orphan"),
    )

    def __repr__(self):
        return f"<Webhook {self.id} user={self.user_id}>"


class WebhookLog(db.Model):
    __tablename__ = "webhook_logs"

    id = db.Column(db.Integer, primary_key=True)
    webhook_id = db.Column(db.Integer, db.ForeignKey("webhooks.id", ondelete="SET NULL"), index=True)
    user_id = db.Column(db.Integer, index=True)
    payload = db.Column(db.JSON)
    status = db.Column(db.String(20), index=True)
    response = db.Column(db.JSON)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    def __repr__(self):
        return f"<WebhookLog {self.status} at {self.created_at}>"


class CoinOrder(db.Model):
    __tablename__ = "coin_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    coins = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), default="INR")
    status = db.Column(db.String(20), default="PENDING", nullable=False, index=True)
    cf_order_id = db.Column(db.String(64))
    payment_session_id = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship("User", backref=db.backref("coin_orders", lazy=True))

    def to_dict(self):
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "coins": self.coins,
            "currency": self.currency,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CoinOrder {self.order_id} {self.status}>"


class CoinTransaction(db.Model):
    __tablename__ = "coin_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(20), nullable=False)
    description = db.Column(db.String(255))
    reference = db.Column(db.String(64), index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "amount": self.amount,
            "transaction_type": self.transaction_type,
            "description": self.description,
            "reference": self.reference,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CoinTransaction {self.transaction_type} {self.amount}>"


class ServiceUsage(db.Model):
    __tablename__ = "service_usage"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    service = db.Column(db.String(50), nullable=False)
    coins = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    def to_dict(self):
        return {
            "service": self.service,
            "coins": self.coins,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _coerce_to_aware_datetime(value):
    """Return a timezone-aware datetime in UTC when possible."""

    if value is None:
        return None

    if isinstance(value, str):
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(normalized)
        except ValueError:
            return None

    if isinstance(value, (int, float)):
        value = datetime.fromtimestamp(value, tz=timezone.utc)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    return None


# SQLite drops tzinfo on the way back; keep comparisons aware everywhere.
@event.listens_for(BrokerCredential, "load")
def _ensure_credential_timezones(credential, _context):
    for attr in ("token_expiry", "last_activity", "created_at", "updated_at"):
        coerced = _coerce_to_aware_datetime(getattr(credential, attr, None))
        if coerced is not None:
            set_committed_value(credential, attr, coerced)


@event.listens_for(BrokerCredential.token_expiry, "set", retval=True)
def _coerce_token_expiry(_target, value, _oldvalue, _initiator):
    coerced = _coerce_to_aware_datetime(value)
    return value if coerced is None else coerced
