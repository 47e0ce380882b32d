import io
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.http import HttpResponse
from django.utils import timezone
from django.utils.crypto import constant_time_compare
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, BasePermission, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

import qrcode

from . import loyalty, services, slots
from .discounts import validate_promo_code
from .exceptions import OrderNotFound, RewardNotFound
from .models import (
    AuditAction,
    AuditLog,
    CancellationReason,
    Order,
    Product,
    PromoCode,
    Reward,
    StoreSettings,
    TimeSlotOverride,
)
from .serializers import (
    BulkDisableSlotsSerializer,
    BulkOrderStatusSerializer,
    CancelOrderSerializer,
    LoyaltyTransactionSerializer,
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    PointsAdjustmentSerializer,
    ProductSerializer,
    PromoCodeSerializer,
    PromoValidateSerializer,
    RewardSerializer,
    StoreSettingsSerializer,
    TimeSlotOverrideSerializer,
)
from .throttles import GuestCheckoutThrottle, PromoValidateThrottle, QrRateThrottle
from users.permissions import IsAdminUserRole, IsStaffOrAdminRole

logger = logging.getLogger(__name__)


def _parse_date_param(request, name="date"):
    value = request.query_params.get(name)
    if not value:
        return None, Response({"detail": f"{name} is required"}, status=status.HTTP_400_BAD_REQUEST)
    try:
        parsed = parse_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        return None, Response({"detail": f"Invalid {name}"}, status=status.HTTP_400_BAD_REQUEST)
    return parsed, None


def _log_audit(action, request, order=None, metadata=None):
    AuditLog.objects.create(
        action=action,
        user=request.user if request.user and request.user.is_authenticated else None,
        order=order,
        metadata=metadata or {},
    )


def _serialize_slot(slot):
    return {
        "time": slot.time,
        "starts_at": slot.starts_at,
        "capacity": slot.capacity,
        "booked": slot.booked,
        "available": slot.available,
        "is_full": slot.is_full,
        "is_limited": slot.is_limited,
        "is_disabled": slot.is_disabled,
        "reason": slot.reason,
    }


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.order_by("name")
    serializer_class = ProductSerializer
    permission_classes = [AllowAny]


class OrderViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = OrderSerializer

    def get_permissions(self):
        if self.action in {"create", "lookup"}:
            permission_classes = [AllowAny]
        elif self.action in {"list", "retrieve", "customer_cancel", "qr"}:
            permission_classes = [IsAuthenticated]
        else:
            permission_classes = [IsStaffOrAdminRole]
        return [perm() for perm in permission_classes]

    def get_throttles(self):
        if self.action == "create":
            return [GuestCheckoutThrottle()]
        if self.action == "qr":
            return [QrRateThrottle()]
        return super().get_throttles()

    def get_queryset(self):
        qs = Order.objects.select_related("promo_code").prefetch_related("items__product")
        user = self.request.user
        if not user.is_authenticated:
            return qs.none()
        if not user.is_shop_staff:
            qs = qs.filter(user=user)
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context["store_settings"] = StoreSettings.get_solo()
        return context

    def create(self, request, *args, **kwargs):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.create_order(serializer.to_create_data(), user=request.user)
        return Response(self.get_serializer(order).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["get"], url_path="lookup")
    def lookup(self, request):
        identifier = request.query_params.get("q")
        if not identifier:
            return Response({"detail": "q is required"}, status=status.HTTP_400_BAD_REQUEST)
        # normalize common typos such as trailing slashes/spaces
        identifier = identifier.strip().strip("/")
        user = request.user
        is_staff = user.is_authenticated and user.is_shop_staff
        try:
            order = services.get_order(identifier, allow_pk=is_staff)
        except OrderNotFound:
            # customers may use the numeric id of their own orders
            order = self.get_queryset().filter(pk=identifier).first() if identifier.isdigit() else None
            if order is None:
                raise
        return Response(self.get_serializer(order).data)

    @action(detail=True, methods=["post"], url_path="status")
    def update_status(self, request, pk=None):
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_object()
        previous = order.status
        order = services.update_status(order.pk, serializer.validated_data["status"])
        _log_audit(
            AuditAction.STATUS_CHANGE,
            request,
            order=order,
            metadata={"from": previous, "to": order.status},
        )
        return Response(self.get_serializer(order).data)

    @action(detail=False, methods=["post"], url_path="bulk-status")
    def bulk_status(self, request):
        serializer = BulkOrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = services.bulk_update_status(
            serializer.validated_data["ids"], serializer.validated_data["status"]
        )
        _log_audit(
            AuditAction.BULK_STATUS,
            request,
            metadata={
                "status": serializer.validated_data["status"],
                "updated": result.updated,
                "failed": list(result.failed),
            },
        )
        return Response(
            {
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "updated": result.updated,
                "failed": {str(pk): message for pk, message in result.failed.items()},
            }
        )

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.cancel_order(
            self.get_object().pk,
            serializer.validated_data["reason"],
            custom_reason=serializer.validated_data.get("custom_reason"),
        )
        _log_audit(
            AuditAction.CANCEL,
            request,
            order=order,
            metadata={"reason": order.cancellation_reason, "points_refunded": order.points_redeemed},
        )
        return Response(self.get_serializer(order).data)

    @action(detail=True, methods=["post"], url_path="customer-cancel")
    def customer_cancel(self, request, pk=None):
        order = self.get_object()
        order = services.cancel_order(
            order.pk,
            CancellationReason.CUSTOMER_REQUEST,
            custom_reason=request.data.get("custom_reason"),
            by_customer=True,
            user=request.user,
        )
        return Response(self.get_serializer(order).data)

    @action(detail=True, methods=["get"], url_path="qr")
    def qr(self, request, pk=None):
        order = self.get_object()
        img = qrcode.make(order.order_number)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")


class PromoCodeViewSet(viewsets.ModelViewSet):
    queryset = PromoCode.objects.order_by("-created_at")
    serializer_class = PromoCodeSerializer

    def get_permissions(self):
        if self.action == "validate":
            return [AllowAny()]
        return [IsAdminUserRole()]

    def get_throttles(self):
        if self.action == "validate":
            return [PromoValidateThrottle()]
        return super().get_throttles()

    @action(detail=False, methods=["post"], url_path="validate")
    def validate(self, request):
        serializer = PromoValidateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        quote = validate_promo_code(
            serializer.validated_data["code"], serializer.validated_data["subtotal"]
        )
        promo = quote.promo
        return Response(
            {
                "code": promo.code,
                "discount_type": promo.discount_type,
                "discount_value": promo.discount_value,
                "discount_amount": quote.discount_amount,
                "min_order_amount": promo.min_order_amount,
            }
        )


class RewardViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = RewardSerializer

    def get_permissions(self):
        if self.action == "redeem":
            return [IsAuthenticated()]
        return [AllowAny()]

    def get_queryset(self):
        return Reward.objects.filter(is_available=True).order_by("points_cost")

    @action(detail=True, methods=["post"], url_path="redeem")
    def redeem(self, request, pk=None):
        reward = Reward.objects.filter(pk=pk).first()
        if reward is None:
            raise RewardNotFound()
        result = loyalty.redeem_reward(request.user, reward)
        return Response(
            {
                "reward": RewardSerializer(result.reward).data,
                "points_spent": result.points_spent,
                "points": result.balance,
                "tier": result.tier,
            }
        )


class LoyaltyViewSet(viewsets.ViewSet):
    def get_permissions(self):
        if self.action in {"bonus", "adjust"}:
            return [IsAdminUserRole()]
        return [IsAuthenticated()]

    def list(self, request):
        user = request.user
        user.refresh_from_db(fields=["loyalty_points", "loyalty_tier"])
        transactions = user.loyalty_transactions.select_related("order")[:20]
        return Response(
            {
                "points": user.loyalty_points,
                "tier": user.loyalty_tier,
                "transactions": LoyaltyTransactionSerializer(transactions, many=True).data,
            }
        )

    @action(detail=False, methods=["post"], url_path="bonus")
    def bonus(self, request):
        serializer = PointsAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        if data["points"] < 0:
            return Response({"detail": "Bonus points must be positive"}, status=status.HTTP_400_BAD_REQUEST)
        loyalty.bonus(data["user_id"], data["points"], data.get("description") or "Bonus")
        _log_audit(AuditAction.POINTS_BONUS, request, metadata=dict(data))
        return self._balance_response(data["user_id"])

    @action(detail=False, methods=["post"], url_path="adjust")
    def adjust(self, request):
        serializer = PointsAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        loyalty.adjust(data["user_id"], data["points"], data.get("description") or "Manual adjustment")
        _log_audit(AuditAction.POINTS_ADJUST, request, metadata=dict(data))
        return self._balance_response(data["user_id"])

    @staticmethod
    def _balance_response(user_id):
        user = get_user_model().objects.get(pk=user_id)
        return Response({"user_id": user.pk, "points": user.loyalty_points, "tier": user.loyalty_tier})


class TimeSlotAvailabilityView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        day, error_response = _parse_date_param(request)
        if error_response:
            return error_response

        failover = request.query_params.get("failover") in {"1", "true", "yes"}
        if failover:
            day, available = slots.next_available_day(day)
        else:
            available = slots.get_slot_availability(day)
        store = StoreSettings.get_solo()
        return Response(
            {
                "date": day.isoformat() if day else None,
                "default_capacity": store.slots_per_time_window,
                "slots": [_serialize_slot(slot) for slot in available],
            }
        )


class TimeSlotOverrideViewSet(viewsets.ModelViewSet):
    queryset = TimeSlotOverride.objects.all()
    serializer_class = TimeSlotOverrideSerializer
    permission_classes = [IsAdminUserRole]

    def get_queryset(self):
        qs = super().get_queryset()
        start = parse_date(self.request.query_params.get("from") or "")
        end = parse_date(self.request.query_params.get("to") or "")
        if start:
            qs = qs.filter(date__gte=start)
        if end:
            qs = qs.filter(date__lte=end)
        return qs

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        # upsert on (date, time) instead of failing the unique constraint
        serializer.validators = []
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        override = slots.upsert_override(
            data["date"],
            data["time"],
            is_disabled=data.get("is_disabled", False),
            max_capacity=data.get("max_capacity"),
            reason=data.get("reason"),
        )
        return Response(self.get_serializer(override).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="bulk-disable")
    def bulk_disable(self, request):
        serializer = BulkDisableSlotsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        count = slots.bulk_disable_slots(data["date"], data["times"], data.get("reason"))
        return Response({"disabled": count})

    @action(detail=False, methods=["post"], url_path="enable-all")
    def enable_all(self, request):
        day = parse_date(str(request.data.get("date", "")))
        if day is None:
            return Response({"detail": "Invalid date"}, status=status.HTTP_400_BAD_REQUEST)
        return Response({"enabled": slots.enable_all_slots(day)})


class StoreSettingsViewSet(viewsets.ViewSet):
    permission_classes = [IsAdminUserRole]

    def list(self, request):
        return Response(StoreSettingsSerializer(StoreSettings.get_solo()).data)

    def create(self, request):
        serializer = StoreSettingsSerializer(StoreSettings.get_solo(), data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)


class HasWebhookToken(BasePermission):
    def has_permission(self, request, view):
        expected = getattr(settings, "PAYMENT_WEBHOOK_TOKEN", "")
        supplied = request.headers.get("X-Webhook-Token", "")
        return bool(expected) and constant_time_compare(supplied, expected)


class PaymentWebhookView(APIView):
    """Entry point for the payment provider's status callbacks."""

    authentication_classes = []
    permission_classes = [HasWebhookToken]

    def post(self, request):
        identifier = request.data.get("order")
        payment_status = str(request.data.get("status", "")).lower()
        reference = str(request.data.get("reference", ""))[:100]
        if not identifier:
            return Response({"detail": "order is required"}, status=status.HTTP_400_BAD_REQUEST)

        if payment_status == "paid":
            order = services.confirm_payment(identifier, reference=reference)
        elif payment_status in {"failed", "canceled", "cancelled", "expired"}:
            order = services.fail_payment(identifier, reference=reference)
        else:
            logger.info("Ignoring payment status '%s' for order %s", payment_status, identifier)
            return Response({"received": True})

        AuditLog.objects.create(
            action=AuditAction.PAYMENT,
            order=order,
            metadata={"status": payment_status, "reference": reference, "at": timezone.now().isoformat()},
        )
        return Response({"received": True, "order_status": order.status})
