"""Coin ledger: balances, service charges and the admin integrity check."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, update

from models import CoinTransaction, ServiceUsage, User, db
from services.errors import BadRequest, Forbidden

logger = logging.getLogger(__name__)

SERVICE_COSTS = {
    "backtest": 50,
    "optimisation": 500,
}


def get_balance(user_id: int) -> int:
    """Sum of the user's ledger entries."""

    total = (
        db.session.query(func.coalesce(func.sum(CoinTransaction.amount), 0))
        .filter(CoinTransaction.user_id == user_id)
        .scalar()
    )
    return int(total or 0)


def add_transaction(
    user_id: int,
    amount: int,
    transaction_type: str,
    description: Optional[str] = None,
    reference: Optional[str] = None,
) -> CoinTransaction:
    """Append a ledger row and move the stored balance with it.

    The caller commits.
    """

    entry = CoinTransaction(
        user_id=user_id,
        amount=int(amount),
        transaction_type=transaction_type,
        description=description,
        reference=reference,
    )
    db.session.add(entry)
    db.session.execute(
        update(User)
        .where(User.id == user_id)
        .values(coin_balance=User.coin_balance + int(amount))
        .execution_options(synchronize_session=False)
    )
    return entry


def service_cost(service: Optional[str]) -> int:
    key = (service or "").strip().lower()
    if key not in SERVICE_COSTS:
        raise BadRequest(
            "Invalid service type",
            details={"validServices": sorted(SERVICE_COSTS)},
        )
    return SERVICE_COSTS[key]


def check_service(user_id: int, service: Optional[str]) -> Dict[str, Any]:
    cost = service_cost(service)
    balance = get_balance(user_id)
    return {
        "service": service.strip().lower(),
        "cost": cost,
        "balance": balance,
        "sufficient": balance >= cost,
    }


def deduct_service(user_id: int, service: Optional[str]) -> Dict[str, Any]:
    """Charge ``service`` to the user; 403 when the balance is short."""

    cost = service_cost(service)
    key = service.strip().lower()
    balance = get_balance(user_id)
    if balance < cost:
        raise Forbidden(
            "Insufficient coins",
            details={"required": cost, "balance": balance},
        )

    add_transaction(user_id, -cost, "service", f"Used {key} service")
    db.session.add(ServiceUsage(user_id=user_id, service=key, coins=cost))
    db.session.commit()
    logger.info("Charged %s coins to user %s for %s", cost, user_id, key)
    return {
        "success": True,
        "service": key,
        "deducted": cost,
        "balance": balance - cost,
    }


def transaction_history(user_id: int) -> Dict[str, Any]:
    transactions = (
        CoinTransaction.query.filter_by(user_id=user_id)
        .order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc())
        .all()
    )
    usage = (
        ServiceUsage.query.filter_by(user_id=user_id)
        .order_by(ServiceUsage.created_at.desc(), ServiceUsage.id.desc())
        .all()
    )
    return {
        "transactions": [t.to_dict() for t in transactions],
        "serviceUsage": [u.to_dict() for u in usage],
        "user_id": user_id,
    }


def verify_coin_system() -> Dict[str, Any]:
    """Compare each user's ledger sum with their stored balance."""

    ledger = dict(
        db.session.query(CoinTransaction.user_id, func.sum(CoinTransaction.amount))
        .group_by(CoinTransaction.user_id)
        .all()
    )
    users = []
    inconsistent = 0
    error_amount = 0
    for user in User.query.order_by(User.id).all():
        calculated = int(ledger.get(user.id) or 0)
        stored = int(user.coin_balance or 0)
        difference = stored - calculated
        if difference:
            inconsistent += 1
            error_amount += abs(difference)
        users.append(
            {
                "user_id": user.id,
                "email": user.email,
                "storedBalance": stored,
                "calculatedBalance": calculated,
                "difference": difference,
                "consistent": difference == 0,
            }
        )

    if inconsistent:
        logger.warning("Coin ledger mismatch for %s users", inconsistent)
    return {
        "users": users,
        "summary": {
            "totalUsers": len(users),
            "inconsistentUsers": inconsistent,
            "totalErrorAmount": error_amount,
            "systemHealthy": inconsistent == 0,
        },
    }
