from django.contrib import admin

from .models import (
    AuditLog,
    LoyaltyTransaction,
    Order,
    OrderItem,
    Product,
    PromoCode,
    Reward,
    StoreSettings,
    TimeSlotOverride,
)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "price", "is_available")
    search_fields = ("name", "slug")
    list_filter = ("is_available",)


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product", "quantity", "unit_price", "line_total", "customizations")
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer_name", "status", "payment_status", "total", "pickup_time")
    search_fields = ("order_number", "customer_name", "customer_email", "customer_phone")
    list_filter = ("status", "payment_status", "is_guest")
    readonly_fields = (
        "order_number",
        "subtotal",
        "discount",
        "total",
        "points_earned",
        "points_redeemed",
        "status",
        "payment_status",
        "cancelled_at",
    )
    inlines = [OrderItemInline]


@admin.register(PromoCode)
class PromoCodeAdmin(admin.ModelAdmin):
    list_display = ("code", "discount_type", "discount_value", "used_count", "max_uses", "valid_until", "is_active")
    search_fields = ("code",)
    list_filter = ("discount_type", "is_active")
    readonly_fields = ("used_count",)


@admin.register(Reward)
class RewardAdmin(admin.ModelAdmin):
    list_display = ("name", "reward_type", "points_cost", "reward_value", "is_available")
    list_filter = ("reward_type", "is_available")


@admin.register(LoyaltyTransaction)
class LoyaltyTransactionAdmin(admin.ModelAdmin):
    list_display = ("user", "type", "points", "order", "created_at")
    list_filter = ("type",)
    search_fields = ("user__username", "user__email", "order__order_number")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(TimeSlotOverride)
class TimeSlotOverrideAdmin(admin.ModelAdmin):
    list_display = ("date", "time", "max_capacity", "is_disabled", "reason")
    list_filter = ("is_disabled", "date")


@admin.register(StoreSettings)
class StoreSettingsAdmin(admin.ModelAdmin):
    list_display = (
        "min_pickup_minutes",
        "max_advance_order_days",
        "points_per_euro",
        "slots_per_time_window",
        "cancelled_orders_free_slot",
    )


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "user", "order", "created_at")
    list_filter = ("action", "created_at")
    search_fields = ("order__order_number", "user__username")
