"""Fire-and-forget customer e-mails.

Delivery failures are logged and never raised; an order status change must
not fail because the mail server is down.
"""
import logging

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from .models import Order

logger = logging.getLogger(__name__)


def _send(order: Order, subject: str, body: str) -> bool:
    try:
        send_mail(
            subject,
            body,
            settings.DEFAULT_FROM_EMAIL,
            [order.customer_email],
            fail_silently=False,
        )
    except Exception:
        logger.exception("Failed to send '%s' e-mail for order %s", subject, order.order_number)
        return False
    return True


def send_order_confirmation(order: Order) -> bool:
    pickup = timezone.localtime(order.pickup_time)
    body = (
        f"Hi {order.customer_name},\n\n"
        f"Thanks for your order {order.order_number}. "
        f"Total paid: €{order.total:.2f}.\n"
        f"Pickup: {pickup:%d/%m/%Y %H:%M}.\n"
    )
    if order.points_earned:
        body += f"You earned {order.points_earned} loyalty points.\n"
    return _send(order, f"Order confirmed: {order.order_number}", body)


def send_order_ready(order: Order) -> bool:
    body = (
        f"Hi {order.customer_name},\n\n"
        f"Your order {order.order_number} is ready for pickup.\n"
    )
    return _send(order, f"Your order {order.order_number} is ready", body)


def send_order_cancelled(order: Order) -> bool:
    reason = order.cancellation_note or order.get_cancellation_reason_display() or ""
    body = (
        f"Hi {order.customer_name},\n\n"
        f"Unfortunately your order {order.order_number} has been cancelled."
    )
    if reason:
        body += f"\nReason: {reason}"
    if order.points_redeemed:
        body += f"\n{order.points_redeemed} loyalty points have been returned to your account."
    return _send(order, f"Order {order.order_number} cancelled", body + "\n")
