"""Points ledger.

``LoyaltyTransaction`` rows are the system of record. ``User.loyalty_points``
and ``User.loyalty_tier`` are a cached projection that every function here
keeps equal to the ledger sum, inside the same database transaction as the
appended row.
"""
from dataclasses import dataclass
import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F, Sum

from users.models import LoyaltyTier

from .exceptions import InsufficientPoints, RewardUnavailable
from .models import LoyaltyTransaction, LoyaltyTransactionType, Order, Reward

logger = logging.getLogger(__name__)

SILVER_THRESHOLD = 500
GOLD_THRESHOLD = 1000


def tier_for(balance: int) -> str:
    if balance >= GOLD_THRESHOLD:
        return LoyaltyTier.GOLD
    if balance >= SILVER_THRESHOLD:
        return LoyaltyTier.SILVER
    return LoyaltyTier.BRONZE


@dataclass(frozen=True)
class RedemptionResult:
    reward: Reward
    points_spent: int
    balance: int
    tier: str


def _users():
    return get_user_model().objects


def _sync_tier(user_id) -> int:
    balance = _users().select_for_update().values_list("loyalty_points", flat=True).get(pk=user_id)
    _users().filter(pk=user_id).update(loyalty_tier=tier_for(balance))
    return balance


def _post(user_id, points: int, tx_type: str, description: str, order: Order | None) -> LoyaltyTransaction:
    entry = LoyaltyTransaction.objects.create(
        user_id=user_id,
        points=points,
        type=tx_type,
        description=description[:255],
        order=order,
    )
    balance = _sync_tier(user_id)
    logger.info(
        "Ledger %s %+d for user %s (order=%s, balance=%s)",
        tx_type,
        points,
        user_id,
        order.pk if order else None,
        balance,
    )
    return entry


def _credit(user_id, points: int, tx_type: str, description: str, order: Order | None = None):
    if points <= 0:
        raise ValueError("points must be positive")
    with transaction.atomic():
        _users().filter(pk=user_id).update(loyalty_points=F("loyalty_points") + points)
        return _post(user_id, points, tx_type, description, order)


def _debit(user_id, points: int, tx_type: str, description: str, order: Order | None = None) -> bool:
    if points <= 0:
        raise ValueError("points must be positive")
    with transaction.atomic():
        # Compare and decrement in one statement; no read-then-write gap.
        applied = (
            _users()
            .filter(pk=user_id, loyalty_points__gte=points)
            .update(loyalty_points=F("loyalty_points") - points)
        )
        if not applied:
            logger.info("Ledger debit of %s points refused for user %s", points, user_id)
            return False
        _post(user_id, -points, tx_type, description, order)
    return True


def redeem(user_id, points: int, reason: str, order: Order | None = None) -> bool:
    """Spend points. Returns False when the balance no longer covers ``points``."""
    return _debit(user_id, points, LoyaltyTransactionType.REDEEM, reason, order)


def earn(user_id, points: int, order: Order) -> LoyaltyTransaction:
    return _credit(user_id, points, LoyaltyTransactionType.EARN, f"Order {order.order_number}", order)


def refund(user_id, points: int, reason: str, order: Order | None = None) -> LoyaltyTransaction:
    return _credit(user_id, points, LoyaltyTransactionType.ADJUSTMENT, reason, order)


def bonus(user_id, points: int, reason: str) -> LoyaltyTransaction:
    return _credit(user_id, points, LoyaltyTransactionType.BONUS, reason)


def adjust(user_id, points: int, reason: str) -> None:
    """Signed manual correction by an admin; never takes the balance below zero."""
    if points > 0:
        _credit(user_id, points, LoyaltyTransactionType.ADJUSTMENT, reason)
    elif points < 0:
        if not _debit(user_id, -points, LoyaltyTransactionType.ADJUSTMENT, reason):
            raise InsufficientPoints("The adjustment would make the balance negative.")
    else:
        raise ValueError("points must not be zero")


def redeem_reward(user, reward: Reward) -> RedemptionResult:
    """Exchange points for a reward outside of checkout."""
    if not reward.is_available:
        raise RewardUnavailable()
    if not redeem(user.pk, reward.points_cost, f"Redeemed: {reward.name}"):
        raise InsufficientPoints(
            f"You have {user.loyalty_points} points, but this reward costs {reward.points_cost} points."
        )
    user.refresh_from_db(fields=["loyalty_points", "loyalty_tier"])
    return RedemptionResult(
        reward=reward,
        points_spent=reward.points_cost,
        balance=user.loyalty_points,
        tier=user.loyalty_tier,
    )


def ledger_balance(user_id) -> int:
    total = LoyaltyTransaction.objects.filter(user_id=user_id).aggregate(total=Sum("points"))["total"]
    return total or 0
