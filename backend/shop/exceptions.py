from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler


class ShopError(APIException):
    """Base class for checkout and order lifecycle failures.

    Each subclass has a stable ``default_code`` that clients use to offer a
    remedial action (pick another slot, drop the reward, ...).
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The request could not be processed."
    default_code = "shop_error"


class ProductNotFound(ShopError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "One or more products do not exist."
    default_code = "product_not_found"


class ProductUnavailable(ShopError):
    default_detail = "One or more products are currently unavailable."
    default_code = "product_unavailable"


class InvalidCode(ShopError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Invalid promo code."
    default_code = "invalid_code"


class CodeInactive(ShopError):
    default_detail = "This promo code is no longer active."
    default_code = "code_inactive"


class CodeNotYetValid(ShopError):
    default_detail = "This promo code is not valid yet."
    default_code = "code_not_yet_valid"


class CodeExpired(ShopError):
    default_detail = "This promo code has expired."
    default_code = "code_expired"


class CodeExhausted(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This promo code has been fully used."
    default_code = "code_exhausted"


class MinimumNotMet(ShopError):
    default_detail = "The order does not reach the minimum amount for this promo code."
    default_code = "minimum_not_met"


class RewardNotFound(ShopError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Reward not found."
    default_code = "reward_not_found"


class RewardUnavailable(ShopError):
    default_detail = "This reward is no longer available."
    default_code = "reward_unavailable"


class InsufficientPoints(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Not enough loyalty points."
    default_code = "insufficient_points"


class OrderNotFound(ShopError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Order not found."
    default_code = "order_not_found"


class InvalidStatusTransition(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This status change is not allowed."
    default_code = "invalid_status_transition"


class CancellationWindowClosed(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The cancellation window for this order has closed."
    default_code = "cancellation_window_closed"


class InvalidPickupTime(ShopError):
    default_detail = "The pickup time is not a bookable time slot."
    default_code = "invalid_pickup_time"


class SlotFull(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This time slot is full."
    default_code = "slot_full"


class SlotDisabled(ShopError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This time slot is not available."
    default_code = "slot_disabled"


def shop_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is not None and isinstance(exc, ShopError):
        response.data["code"] = exc.default_code
    return response
