from decimal import Decimal
import re

from django.contrib.auth import get_user_model
from rest_framework import serializers

from .models import (
    CancellationReason,
    LoyaltyTransaction,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    PromoCode,
    Reward,
    StoreSettings,
    TimeSlotOverride,
)
from .services import OrderCreateData, OrderItemInput, cancel_deadline
from .slots import WEEKDAYS

ICE_LEVELS = ("none", "less", "regular", "extra")
SIZES = ("regular", "large")
HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
HHMM_RE = re.compile(HHMM_PATTERN)


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "slug", "name", "price", "is_available"]


class CustomizationSerializer(serializers.Serializer):
    sugar_level = serializers.IntegerField(min_value=0, max_value=100, required=False)
    ice_level = serializers.ChoiceField(choices=ICE_LEVELS, required=False)
    size = serializers.ChoiceField(choices=SIZES, required=False)
    toppings = serializers.ListField(child=serializers.CharField(max_length=50), required=False)
    milk_type = serializers.CharField(max_length=50, required=False, allow_blank=True)


class OrderItemInputSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1, max_value=99)
    customizations = CustomizationSerializer(required=False)


class OrderCreateSerializer(serializers.Serializer):
    """Checkout payload. There are no price fields; prices come from the catalog."""

    items = OrderItemInputSerializer(many=True, allow_empty=False)
    customer_name = serializers.CharField(max_length=255)
    customer_email = serializers.EmailField()
    customer_phone = serializers.CharField(max_length=30, required=False, allow_blank=True)
    pickup_time = serializers.DateTimeField()
    notes = serializers.CharField(required=False, allow_blank=True)
    promo_code = serializers.CharField(max_length=20, required=False, allow_blank=True)
    reward_id = serializers.IntegerField(required=False, allow_null=True)

    def to_create_data(self) -> OrderCreateData:
        data = self.validated_data
        return OrderCreateData(
            items=[
                OrderItemInput(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    customizations=dict(item.get("customizations") or {}),
                )
                for item in data["items"]
            ],
            customer_name=data["customer_name"],
            customer_email=data["customer_email"],
            customer_phone=data.get("customer_phone", ""),
            pickup_time=data["pickup_time"],
            notes=data.get("notes", ""),
            promo_code=data.get("promo_code") or None,
            reward_id=data.get("reward_id"),
        )


class OrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = OrderItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "line_total", "customizations"]


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    promo_code = serializers.CharField(source="promo_code.code", read_only=True, default=None)
    cancel_deadline = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "user",
            "is_guest",
            "customer_name",
            "customer_email",
            "customer_phone",
            "pickup_time",
            "notes",
            "subtotal",
            "discount",
            "total",
            "points_earned",
            "points_redeemed",
            "promo_code",
            "reward",
            "status",
            "payment_status",
            "cancellation_reason",
            "cancellation_note",
            "cancelled_at",
            "cancel_deadline",
            "items",
            "created_at",
            "updated_at",
        ]

    def get_cancel_deadline(self, obj):
        settings = self.context.get("store_settings")
        return cancel_deadline(obj, settings)


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)


class BulkOrderStatusSerializer(serializers.Serializer):
    ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
    status = serializers.ChoiceField(choices=OrderStatus.choices)


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.ChoiceField(choices=CancellationReason.choices)
    custom_reason = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate(self, attrs):
        if attrs["reason"] == CancellationReason.OTHER and not attrs.get("custom_reason", "").strip():
            raise serializers.ValidationError({"custom_reason": "Required when reason is OTHER."})
        return attrs


class PromoCodeSerializer(serializers.ModelSerializer):
    class Meta:
        model = PromoCode
        fields = [
            "id",
            "code",
            "discount_type",
            "discount_value",
            "min_order_amount",
            "max_uses",
            "used_count",
            "valid_from",
            "valid_until",
            "is_active",
        ]
        read_only_fields = ["used_count"]

    def validate_code(self, value):
        value = value.strip().upper()
        if len(value) < 3:
            raise serializers.ValidationError("Code must be at least 3 characters.")
        existing = PromoCode.objects.filter(code__iexact=value)
        if self.instance is not None:
            existing = existing.exclude(pk=self.instance.pk)
        if existing.exists():
            raise serializers.ValidationError("This promo code already exists.")
        return value

    def validate_discount_value(self, value):
        if value <= 0:
            raise serializers.ValidationError("Discount value must be positive.")
        return value

    def validate(self, attrs):
        valid_from = attrs.get("valid_from", getattr(self.instance, "valid_from", None))
        valid_until = attrs.get("valid_until", getattr(self.instance, "valid_until", None))
        if valid_from and valid_until and valid_until < valid_from:
            raise serializers.ValidationError({"valid_until": "Must be after valid_from."})
        return attrs


class PromoValidateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=20)
    subtotal = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))


class RewardSerializer(serializers.ModelSerializer):
    class Meta:
        model = Reward
        fields = ["id", "slug", "name", "description", "points_cost", "reward_type", "reward_value", "is_available"]


class LoyaltyTransactionSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source="order.order_number", read_only=True, default=None)

    class Meta:
        model = LoyaltyTransaction
        fields = ["id", "points", "type", "description", "order", "order_number", "created_at"]


class PointsAdjustmentSerializer(serializers.Serializer):
    user_id = serializers.IntegerField()
    points = serializers.IntegerField()
    description = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_user_id(self, value):
        if not get_user_model().objects.filter(pk=value).exists():
            raise serializers.ValidationError("User not found.")
        return value

    def validate_points(self, value):
        if value == 0:
            raise serializers.ValidationError("Points must not be zero.")
        return value


class TimeSlotOverrideSerializer(serializers.ModelSerializer):
    time = serializers.RegexField(HHMM_PATTERN)

    class Meta:
        model = TimeSlotOverride
        fields = ["id", "date", "time", "max_capacity", "is_disabled", "reason"]


class BulkDisableSlotsSerializer(serializers.Serializer):
    date = serializers.DateField()
    times = serializers.ListField(child=serializers.RegexField(HHMM_PATTERN), allow_empty=False)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)


class StoreSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = StoreSettings
        fields = [
            "opening_hours",
            "min_pickup_minutes",
            "max_advance_order_days",
            "points_per_euro",
            "slots_per_time_window",
            "slot_interval_minutes",
            "cancelled_orders_free_slot",
            "customer_cancel_window_minutes",
        ]

    def validate_opening_hours(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Expected an object keyed by weekday.")
        unknown = sorted(set(value) - set(WEEKDAYS))
        if unknown:
            raise serializers.ValidationError(f"Unknown weekday(s): {', '.join(unknown)}.")
        for day, hours in value.items():
            if not isinstance(hours, dict):
                raise serializers.ValidationError(f"{day}: expected an object.")
            if hours.get("closed"):
                continue
            for key in ("open", "close"):
                if not isinstance(hours.get(key), str) or not HHMM_RE.match(hours[key]):
                    raise serializers.ValidationError(f"{day}: '{key}' must be HH:MM.")
            # zero-padded HH:MM strings compare in time order
            if hours["open"] >= hours["close"]:
                raise serializers.ValidationError(f"{day}: 'open' must be before 'close'.")
        return value
