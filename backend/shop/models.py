from datetime import timedelta
from decimal import Decimal
import uuid

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Product(TimeStampedModel):
    slug = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=8, decimal_places=2)
    is_available = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"{self.name} (€{self.price})"


class DiscountType(models.TextChoices):
    PERCENTAGE = "PERCENTAGE", "Percentage"
    FIXED_AMOUNT = "FIXED_AMOUNT", "Fixed amount"


class PromoCode(TimeStampedModel):
    code = models.CharField(max_length=20, unique=True)
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices)
    discount_value = models.DecimalField(max_digits=8, decimal_places=2)
    min_order_amount = models.DecimalField(max_digits=8, decimal_places=2, blank=True, null=True)
    max_uses = models.PositiveIntegerField(blank=True, null=True)
    used_count = models.PositiveIntegerField(default=0)
    valid_from = models.DateTimeField()
    valid_until = models.DateTimeField()
    is_active = models.BooleanField(default=True)

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return self.code

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.used_count >= self.max_uses


class RewardType(models.TextChoices):
    DISCOUNT = "DISCOUNT", "Discount"
    FREE_DRINK = "FREE_DRINK", "Free drink"
    FREE_TOPPING = "FREE_TOPPING", "Free topping"
    SIZE_UPGRADE = "SIZE_UPGRADE", "Size upgrade"


class Reward(TimeStampedModel):
    slug = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    points_cost = models.PositiveIntegerField()
    reward_type = models.CharField(max_length=20, choices=RewardType.choices)
    reward_value = models.DecimalField(max_digits=8, decimal_places=2)
    is_available = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.points_cost} pts)"


class OrderStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    PAID = "PAID", "Paid"
    PREPARING = "PREPARING", "Preparing"
    READY = "READY", "Ready"
    COMPLETED = "COMPLETED", "Completed"
    CANCELLED = "CANCELLED", "Cancelled"


class PaymentStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    PAID = "PAID", "Paid"
    FAILED = "FAILED", "Failed"


class CancellationReason(models.TextChoices):
    BUSY = "BUSY", "Too busy"
    OUT_OF_STOCK = "OUT_OF_STOCK", "Out of stock"
    CUSTOMER_REQUEST = "CUSTOMER_REQUEST", "Customer request"
    OTHER = "OTHER", "Other"


class Order(TimeStampedModel):
    order_number = models.CharField(max_length=20, unique=True, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="orders",
        null=True,
        blank=True,
    )
    is_guest = models.BooleanField(default=True)

    customer_name = models.CharField(max_length=255)
    customer_email = models.EmailField()
    customer_phone = models.CharField(max_length=30, blank=True)
    pickup_time = models.DateTimeField()
    notes = models.TextField(blank=True)

    subtotal = models.DecimalField(max_digits=10, decimal_places=2)
    discount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=10, decimal_places=2)
    points_earned = models.PositiveIntegerField(default=0)
    points_redeemed = models.PositiveIntegerField(default=0)
    promo_code = models.ForeignKey(
        PromoCode, on_delete=models.SET_NULL, related_name="orders", null=True, blank=True
    )
    reward = models.ForeignKey(
        Reward, on_delete=models.SET_NULL, related_name="orders", null=True, blank=True
    )

    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    payment_reference = models.CharField(max_length=100, blank=True)

    cancellation_reason = models.CharField(
        max_length=20, choices=CancellationReason.choices, blank=True, null=True
    )
    cancellation_note = models.CharField(max_length=255, blank=True)
    cancelled_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["pickup_time", "status"], name="order_pickup_status_idx")]
        constraints = [
            models.CheckConstraint(
                condition=Q(discount__lte=F("subtotal")),
                name="order_discount_not_above_subtotal",
            ),
            models.CheckConstraint(
                condition=Q(total__gte=0),
                name="order_total_non_negative",
            ),
        ]

    @staticmethod
    def generate_order_number() -> str:
        return f"ORD-{uuid.uuid4().hex[:10].upper()}"

    def save(self, *args, **kwargs):
        if not self.order_number:
            self.order_number = self.generate_order_number()
            while type(self).objects.filter(order_number=self.order_number).exists():
                self.order_number = self.generate_order_number()
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status})"

    def cancel_deadline(self, window_minutes: int):
        return self.created_at + timedelta(minutes=window_minutes)


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="order_items")
    quantity = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(99)]
    )
    # Copied from the catalog at order time, never recomputed.
    unit_price = models.DecimalField(max_digits=8, decimal_places=2)
    line_total = models.DecimalField(max_digits=10, decimal_places=2)
    customizations = models.JSONField(default=dict, blank=True)

    def __str__(self) -> str:
        return f"{self.quantity} x {self.product.name}"


class LoyaltyTransactionType(models.TextChoices):
    EARN = "EARN", "Earned"
    REDEEM = "REDEEM", "Redeemed"
    BONUS = "BONUS", "Bonus"
    ADJUSTMENT = "ADJUSTMENT", "Adjustment"


class LoyaltyTransaction(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="loyalty_transactions",
    )
    points = models.IntegerField()
    type = models.CharField(max_length=20, choices=LoyaltyTransactionType.choices)
    description = models.CharField(max_length=255, blank=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.SET_NULL,
        related_name="loyalty_transactions",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.type} {self.points:+d} ({self.user_id})"


class TimeSlotOverride(TimeStampedModel):
    date = models.DateField()
    time = models.CharField(max_length=5)
    max_capacity = models.PositiveIntegerField(blank=True, null=True)
    is_disabled = models.BooleanField(default=False)
    reason = models.CharField(max_length=255, blank=True, null=True)

    class Meta:
        unique_together = ("date", "time")
        ordering = ["date", "time"]

    def __str__(self) -> str:
        return f"{self.date} {self.time}"


def default_opening_hours() -> dict:
    weekday = {"open": "11:00", "close": "20:00"}
    return {
        "monday": dict(weekday),
        "tuesday": dict(weekday),
        "wednesday": dict(weekday),
        "thursday": dict(weekday),
        "friday": dict(weekday),
        "saturday": dict(weekday),
        "sunday": {"open": "10:00", "close": "19:00"},
    }


class StoreSettings(TimeStampedModel):
    opening_hours = models.JSONField(default=default_opening_hours)
    min_pickup_minutes = models.PositiveIntegerField(
        default=15, validators=[MinValueValidator(5), MaxValueValidator(120)]
    )
    max_advance_order_days = models.PositiveIntegerField(
        default=7, validators=[MinValueValidator(1), MaxValueValidator(30)]
    )
    points_per_euro = models.PositiveIntegerField(
        default=10, validators=[MinValueValidator(1), MaxValueValidator(100)]
    )
    slots_per_time_window = models.PositiveIntegerField(
        default=10, validators=[MinValueValidator(1), MaxValueValidator(100)]
    )
    slot_interval_minutes = models.PositiveIntegerField(
        default=30, validators=[MinValueValidator(5), MaxValueValidator(120)]
    )
    cancelled_orders_free_slot = models.BooleanField(default=True)
    customer_cancel_window_minutes = models.PositiveIntegerField(default=30)

    def __str__(self) -> str:
        return "Store Settings"

    @classmethod
    def get_solo(cls) -> "StoreSettings":
        obj, _ = cls.objects.get_or_create(id=1)
        return obj


class AuditAction(models.TextChoices):
    STATUS_CHANGE = "status_change", "Status Change"
    BULK_STATUS = "bulk_status", "Bulk Status Change"
    CANCEL = "cancel", "Cancel"
    POINTS_BONUS = "points_bonus", "Points Bonus"
    POINTS_ADJUST = "points_adjust", "Points Adjustment"
    PAYMENT = "payment", "Payment"


class AuditLog(TimeStampedModel):
    action = models.CharField(max_length=30, choices=AuditAction.choices)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    order = models.ForeignKey(
        Order,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    metadata = models.JSONField(default=dict, blank=True)

    def __str__(self) -> str:
        return f"{self.action} ({self.created_at})"
