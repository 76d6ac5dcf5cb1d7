import logging

from flask import Blueprint, jsonify, session

from helpers import current_user, json_body, login_required_api
from models import db, User
from services.errors import BadRequest, Unauthorized

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

logger = logging.getLogger(__name__)


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone,
        "role": user.role,
        "coin_balance": user.coin_balance,
    }


@auth_bp.post("/register")
def register():
    data = json_body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise BadRequest("Email and password are required")
    if len(password) < 8:
        raise BadRequest("Password must be at least 8 characters")
    if User.query.filter_by(email=email).first():
        raise BadRequest("Email already registered")

    user = User(email=email, name=data.get("name"), phone=data.get("phone"))
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    session["user"] = user.id
    logger.info("Registered user %s", user.id)
    return jsonify({"user": _user_dict(user)}), 201


@auth_bp.post("/login")
def login():
    data = json_body()
    email = (data.get("email") or "").strip().lower()
    user = User.query.filter_by(email=email).first() if email else None
    if not user or not user.check_password(data.get("password") or ""):
        raise Unauthorized("Invalid email or password")
    session.clear()
    session["user"] = user.id
    return jsonify({"user": _user_dict(user)})


@auth_bp.post("/logout")
def logout():
    session.clear()
    return jsonify({"success": True})


@auth_bp.get("/me")
@login_required_api
def me():
    return jsonify({"user": _user_dict(current_user())})
