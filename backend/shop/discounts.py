from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
import logging

from django.db.models import F, Q
from django.utils import timezone
from rest_framework.exceptions import NotAuthenticated

from .exceptions import (
    CodeExhausted,
    CodeExpired,
    CodeInactive,
    CodeNotYetValid,
    InsufficientPoints,
    InvalidCode,
    MinimumNotMet,
    RewardUnavailable,
)
from .models import DiscountType, PromoCode, Reward, RewardType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PromoQuote:
    promo: PromoCode
    discount_amount: Decimal

    @property
    def code(self) -> str:
        return self.promo.code


@dataclass(frozen=True)
class RewardQuote:
    reward: Reward
    discount_amount: Decimal

    @property
    def points_cost(self) -> int:
        return self.reward.points_cost


def _find_promo(code: str) -> PromoCode:
    promo = PromoCode.objects.filter(code__iexact=(code or "").strip()).first()
    if promo is None:
        raise InvalidCode()
    return promo


def _check_promo(promo: PromoCode, subtotal: Decimal, now) -> None:
    if not promo.is_active:
        raise CodeInactive()
    if now < promo.valid_from:
        raise CodeNotYetValid()
    if now > promo.valid_until:
        raise CodeExpired()
    if promo.is_exhausted:
        raise CodeExhausted()
    if promo.min_order_amount is not None and subtotal < promo.min_order_amount:
        raise MinimumNotMet(f"Minimum order amount is €{promo.min_order_amount:.2f}")


def promo_discount_amount(promo: PromoCode, subtotal: Decimal) -> Decimal:
    if promo.discount_type == DiscountType.PERCENTAGE:
        amount = subtotal * promo.discount_value / Decimal(100)
    else:
        amount = promo.discount_value
    return quantize_money(min(amount, subtotal))


def validate_promo_code(code: str, subtotal: Decimal, now=None) -> PromoQuote:
    """Check a promo code against an order subtotal without touching its usage counter."""
    now = now or timezone.now()
    subtotal = quantize_money(subtotal)
    promo = _find_promo(code)
    _check_promo(promo, subtotal, now)
    return PromoQuote(promo=promo, discount_amount=promo_discount_amount(promo, subtotal))


def redeem_promo_code(code: str, subtotal: Decimal, now=None) -> PromoQuote:
    """Validate and consume one use of a promo code.

    The counter is bumped by a single conditional UPDATE so two checkouts
    racing for the last use cannot both succeed.
    """
    quote = validate_promo_code(code, subtotal, now=now)
    applied = (
        PromoCode.objects.filter(pk=quote.promo.pk)
        .filter(Q(max_uses__isnull=True) | Q(used_count__lt=F("max_uses")))
        .update(used_count=F("used_count") + 1)
    )
    if not applied:
        logger.info("Promo code %s exhausted during redemption", quote.code)
        raise CodeExhausted()
    return quote


def release_promo_code(promo: PromoCode) -> None:
    PromoCode.objects.filter(pk=promo.pk, used_count__gt=0).update(used_count=F("used_count") - 1)


def reward_discount_amount(reward: Reward, subtotal: Decimal) -> Decimal:
    if reward.reward_type == RewardType.FREE_DRINK:
        return quantize_money(min(reward.reward_value, subtotal))
    # DISCOUNT, FREE_TOPPING and SIZE_UPGRADE are flat amounts.
    return quantize_money(reward.reward_value)


def resolve_reward_discount(reward: Reward, subtotal: Decimal, user) -> RewardQuote:
    """Price a reward for an order.

    The balance comparison here reads the cached balance and is only a
    pre-check; the ledger redeem is the authoritative one.
    """
    if user is None or not user.is_authenticated:
        raise NotAuthenticated("Log in to redeem loyalty rewards.")
    if not reward.is_available:
        raise RewardUnavailable()
    if user.loyalty_points < reward.points_cost:
        raise InsufficientPoints(
            f"You have {user.loyalty_points} points, but this reward costs {reward.points_cost} points."
        )
    return RewardQuote(reward=reward, discount_amount=reward_discount_amount(reward, subtotal))


def combine_discounts(subtotal: Decimal, promo_amount: Decimal, reward_amount: Decimal):
    """Return ``(discount, total)`` with the discount capped at the subtotal."""
    discount = quantize_money(min(promo_amount + reward_amount, subtotal))
    return discount, quantize_money(subtotal - discount)


def points_for_total(total: Decimal, points_per_euro: int, is_guest: bool) -> int:
    if is_guest:
        return 0
    return int((total * points_per_euro).to_integral_value(rounding=ROUND_FLOOR))
