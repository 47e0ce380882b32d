"""Order lifecycle: checkout, payment outcome, staff status changes and cancellation."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from . import loyalty, notifications
from .catalog import quote_products
from .discounts import (
    ZERO,
    combine_discounts,
    points_for_total,
    quantize_money,
    redeem_promo_code,
    release_promo_code,
    resolve_reward_discount,
    validate_promo_code,
)
from .exceptions import (
    CancellationWindowClosed,
    InsufficientPoints,
    InvalidStatusTransition,
    OrderNotFound,
    RewardNotFound,
    ShopError,
)
from .models import (
    CancellationReason,
    LoyaltyTransactionType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Reward,
    StoreSettings,
)
from .slots import check_slot_bookable

logger = logging.getLogger(__name__)

# (current, requested) pairs staff may apply. Anything else is rejected.
ALLOWED_TRANSITIONS = frozenset(
    {
        (OrderStatus.PENDING, OrderStatus.PAID),
        (OrderStatus.PAID, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
        (OrderStatus.READY, OrderStatus.COMPLETED),
        (OrderStatus.PAID, OrderStatus.CANCELLED),
        (OrderStatus.PREPARING, OrderStatus.CANCELLED),
    }
)
CANCELLABLE_STATUSES = frozenset(
    current for current, requested in ALLOWED_TRANSITIONS if requested == OrderStatus.CANCELLED
)


def can_transition(current: str, requested: str) -> bool:
    return (current, requested) in ALLOWED_TRANSITIONS


@dataclass
class OrderItemInput:
    product_id: int
    quantity: int
    customizations: dict = field(default_factory=dict)


@dataclass
class OrderCreateData:
    items: list[OrderItemInput]
    customer_name: str
    customer_email: str
    pickup_time: datetime
    customer_phone: str = ""
    notes: str = ""
    promo_code: str | None = None
    reward_id: int | None = None


@dataclass
class BulkResult:
    updated: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.updated)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


def get_order(identifier, allow_pk: bool = True) -> Order:
    """Find an order by its order number (case-insensitive) or its primary key.

    Public lookups pass ``allow_pk=False``: sequential ids are guessable,
    order numbers are not.
    """
    value = str(identifier).strip()
    orders = Order.objects.select_related("user", "promo_code", "reward").prefetch_related("items__product")
    order = orders.filter(order_number__iexact=value).first()
    if order is None and allow_pk and value.isdigit():
        order = orders.filter(pk=int(value)).first()
    if order is None:
        raise OrderNotFound()
    return order


def _get_reward(reward_id) -> Reward:
    try:
        return Reward.objects.get(pk=reward_id)
    except (Reward.DoesNotExist, ValueError, TypeError):
        raise RewardNotFound()


def _rollback_order(order: Order, promo) -> None:
    order_number = order.order_number
    order.delete()
    if promo is not None:
        release_promo_code(promo)
    logger.warning("Order %s rolled back after failed point redemption", order_number)


def create_order(data: OrderCreateData, user=None, now=None) -> Order:
    """Price, discount and persist a checkout.

    Any failure leaves nothing behind. The order row is written before the
    reward points are taken; if the ledger refuses the debit the order is
    deleted again and ``InsufficientPoints`` is raised.
    """
    if not data.items:
        raise ValidationError({"items": "An order needs at least one item."})
    now = now or timezone.now()
    settings = StoreSettings.get_solo()
    is_guest = user is None or not user.is_authenticated

    check_slot_bookable(data.pickup_time, now=now)

    quotes = quote_products(item.product_id for item in data.items)
    lines = []
    subtotal = ZERO
    for item in data.items:
        unit_price = quotes[item.product_id].price
        line_total = quantize_money(unit_price * item.quantity)
        subtotal += line_total
        lines.append((item, unit_price, line_total))
    subtotal = quantize_money(subtotal)

    promo_amount = ZERO
    if data.promo_code:
        promo_amount = validate_promo_code(data.promo_code, subtotal, now=now).discount_amount

    reward_quote = None
    if data.reward_id is not None:
        reward_quote = resolve_reward_discount(_get_reward(data.reward_id), subtotal, user)

    discount, total = combine_discounts(
        subtotal, promo_amount, reward_quote.discount_amount if reward_quote else ZERO
    )
    points_earned = points_for_total(total, settings.points_per_euro, is_guest)

    promo = None
    with transaction.atomic():
        if data.promo_code:
            promo = redeem_promo_code(data.promo_code, subtotal, now=now).promo
        order = Order.objects.create(
            user=None if is_guest else user,
            is_guest=is_guest,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone or "",
            pickup_time=data.pickup_time,
            notes=data.notes or "",
            subtotal=subtotal,
            discount=discount,
            total=total,
            points_earned=points_earned,
            points_redeemed=reward_quote.points_cost if reward_quote else 0,
            promo_code=promo,
            reward=reward_quote.reward if reward_quote else None,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )
        OrderItem.objects.bulk_create(
            [
                OrderItem(
                    order=order,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    line_total=line_total,
                    customizations=item.customizations or {},
                )
                for item, unit_price, line_total in lines
            ]
        )

    if reward_quote is not None:
        reason = f"Redeemed: {reward_quote.reward.name} (order {order.order_number})"
        try:
            applied = loyalty.redeem(user.pk, reward_quote.points_cost, reason, order=order)
        except Exception:
            _rollback_order(order, promo)
            raise
        if not applied:
            _rollback_order(order, promo)
            raise InsufficientPoints("Your points were spent by another order. Remove the reward and try again.")

    logger.info(
        "Order %s created: subtotal=%s discount=%s total=%s guest=%s",
        order.order_number,
        subtotal,
        discount,
        total,
        is_guest,
    )
    return order


def confirm_payment(order_id, reference: str = "") -> Order:
    """Payment succeeded: move PENDING to PAID and award the order's points once."""
    order = get_order(order_id)
    now = timezone.now()
    with transaction.atomic():
        applied = Order.objects.filter(pk=order.pk, status=OrderStatus.PENDING).update(
            status=OrderStatus.PAID,
            payment_status=PaymentStatus.PAID,
            payment_reference=reference or F("payment_reference"),
            updated_at=now,
        )
        order.refresh_from_db()
        if not applied:
            logger.info("Payment for order %s already processed (status %s)", order.order_number, order.status)
            return order
        if order.user_id and order.points_earned > 0:
            loyalty.earn(order.user_id, order.points_earned, order)

    logger.info("Order %s paid", order.order_number)
    notifications.send_order_confirmation(order)
    return order


def fail_payment(order_id, reference: str = "") -> Order:
    """Payment failed or was abandoned: cancel the order and return redeemed points."""
    order = get_order(order_id)
    now = timezone.now()
    with transaction.atomic():
        applied = Order.objects.filter(pk=order.pk, status=OrderStatus.PENDING).update(
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
            payment_reference=reference or F("payment_reference"),
            cancellation_note="Payment failed",
            cancelled_at=now,
            updated_at=now,
        )
        order.refresh_from_db()
        if applied:
            refund_points(order)
    if applied:
        logger.info("Order %s cancelled after failed payment", order.order_number)
    return order


def refund_points(order: Order):
    """Return the points an order redeemed. Safe to call more than once."""
    if not order.user_id or not order.points_redeemed:
        return None
    already = order.loyalty_transactions.filter(
        type=LoyaltyTransactionType.ADJUSTMENT, points__gt=0
    ).exists()
    if already:
        return None
    return loyalty.refund(
        order.user_id,
        order.points_redeemed,
        f"Refunded: order {order.order_number} cancelled",
        order=order,
    )


def update_status(order_id, next_status: str) -> Order:
    order = get_order(order_id)
    current = order.status

    if next_status == OrderStatus.CANCELLED:
        raise InvalidStatusTransition("Cancelling an order requires a reason; use cancel instead.")
    if not can_transition(current, next_status):
        raise InvalidStatusTransition(f"Cannot change order status from {current} to {next_status}.")
    if next_status == OrderStatus.PAID:
        return confirm_payment(order.pk)

    applied = Order.objects.filter(pk=order.pk, status=current).update(
        status=next_status, updated_at=timezone.now()
    )
    if not applied:
        raise InvalidStatusTransition(f"Order {order.order_number} was changed by someone else.")
    order.refresh_from_db()
    logger.info("Order %s: %s -> %s", order.order_number, current, next_status)

    if next_status == OrderStatus.READY:
        notifications.send_order_ready(order)
    return order


def bulk_update_status(order_ids, next_status: str) -> BulkResult:
    """Apply ``update_status`` to each order on its own; failures do not stop the rest."""
    result = BulkResult()
    for order_id in order_ids:
        try:
            update_status(order_id, next_status)
        except ShopError as exc:
            result.failed[order_id] = str(exc.detail)
        else:
            result.updated.append(order_id)
    logger.info(
        "Bulk status %s: %s updated, %s failed", next_status, result.success_count, result.failure_count
    )
    return result


def cancel_deadline(order: Order, settings: StoreSettings | None = None):
    settings = settings or StoreSettings.get_solo()
    return order.cancel_deadline(settings.customer_cancel_window_minutes)


def cancel_order(
    order_id,
    reason: str,
    custom_reason: str | None = None,
    by_customer: bool = False,
    user=None,
    now=None,
) -> Order:
    if reason not in CancellationReason.values:
        raise ValidationError({"reason": f"Unknown cancellation reason '{reason}'."})
    if reason == CancellationReason.OTHER and not (custom_reason or "").strip():
        raise ValidationError({"custom_reason": "A reason is required when cancelling with OTHER."})

    now = now or timezone.now()
    order = get_order(order_id)

    if by_customer:
        if user is None or order.user_id != user.pk:
            raise OrderNotFound()
        if now > cancel_deadline(order):
            raise CancellationWindowClosed()

    if order.status not in CANCELLABLE_STATUSES:
        raise InvalidStatusTransition(f"An order in status {order.status} cannot be cancelled.")

    with transaction.atomic():
        applied = Order.objects.filter(pk=order.pk, status=order.status).update(
            status=OrderStatus.CANCELLED,
            cancellation_reason=reason,
            cancellation_note=(custom_reason or "").strip(),
            cancelled_at=now,
            updated_at=now,
        )
        if not applied:
            raise InvalidStatusTransition(f"Order {order.order_number} was changed by someone else.")
        order.refresh_from_db()
        refund_points(order)

    logger.info("Order %s cancelled (%s)", order.order_number, reason)
    notifications.send_order_cancelled(order)
    return order
