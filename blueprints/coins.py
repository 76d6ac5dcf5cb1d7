from flask import Blueprint, jsonify

from helpers import admin_required_api, current_user, json_body, login_required_api
from services import coins

coins_bp = Blueprint("coins", __name__, url_prefix="/api")


@coins_bp.post("/check-service-coins")
@login_required_api
def check_service_coins():
    data = json_body()
    return jsonify(coins.check_service(current_user().id, data.get("service")))


@coins_bp.post("/deduct-service-coins")
@login_required_api
def deduct_service_coins():
    data = json_body()
    return jsonify(coins.deduct_service(current_user().id, data.get("service")))


@coins_bp.get("/coin-balance")
@login_required_api
def coin_balance():
    return jsonify({"balance": coins.get_balance(current_user().id)})


@coins_bp.get("/coin-transaction-history")
@login_required_api
def coin_transaction_history():
    return jsonify(coins.transaction_history(current_user().id))


@coins_bp.get("/admin/verify-coin-system")
@admin_required_api
def verify_coin_system():
    return jsonify(coins.verify_coin_system())
