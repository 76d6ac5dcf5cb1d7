from functools import wraps

from flask import jsonify, request, session

from models import User, db


def current_user():
    """Return the logged in ``User`` instance or ``None``."""
    user_key = session.get("user")
    if user_key is None:
        return None

    # ``session['user']`` holds the user id; older sessions stored it as a
    # digit string.
    if isinstance(user_key, str):
        if not user_key.isdigit():
            return None
        user_key = int(user_key)
    return db.session.get(User, user_key)


def login_required_api(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            return jsonify({"error": "Unauthorized"}), 401
        return fn(*args, **kwargs)

    return wrapper


def admin_required_api(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({"error": "Unauthorized"}), 401
        if not user.is_admin:
            return jsonify({"error": "Admin access required"}), 403
        return fn(*args, **kwargs)

    return wrapper


def json_body():
    """Return the request JSON object, or an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
