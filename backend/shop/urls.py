from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    LoyaltyViewSet,
    OrderViewSet,
    PaymentWebhookView,
    ProductViewSet,
    PromoCodeViewSet,
    RewardViewSet,
    StoreSettingsViewSet,
    TimeSlotAvailabilityView,
    TimeSlotOverrideViewSet,
)

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="products")
router.register(r"orders", OrderViewSet, basename="orders")
router.register(r"promo-codes", PromoCodeViewSet, basename="promo-codes")
router.register(r"rewards", RewardViewSet, basename="rewards")
router.register(r"loyalty", LoyaltyViewSet, basename="loyalty")
router.register(r"time-slot-overrides", TimeSlotOverrideViewSet, basename="time-slot-overrides")
router.register(r"settings", StoreSettingsViewSet, basename="settings")

urlpatterns = [
    *router.urls,
    path(
        "time-slots/availability/",
        TimeSlotAvailabilityView.as_view(),
        name="time-slots-availability",
    ),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
]
