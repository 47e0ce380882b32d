from datetime import date, datetime, time, timedelta
from decimal import Decimal
from smtplib import SMTPException
from unittest import mock
from zoneinfo import ZoneInfo

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.exceptions import NotAuthenticated, ValidationError
from rest_framework.test import APIClient

from users.models import LoyaltyTier, UserRole

from . import loyalty, services, slots
from .catalog import lookup_products, quote_products
from .discounts import (
    combine_discounts,
    points_for_total,
    redeem_promo_code,
    resolve_reward_discount,
    validate_promo_code,
)
from .exceptions import (
    CancellationWindowClosed,
    CodeExhausted,
    CodeExpired,
    CodeInactive,
    CodeNotYetValid,
    InsufficientPoints,
    InvalidCode,
    InvalidPickupTime,
    InvalidStatusTransition,
    MinimumNotMet,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    RewardUnavailable,
    SlotDisabled,
    SlotFull,
)
from .models import (
    CancellationReason,
    DiscountType,
    LoyaltyTransaction,
    LoyaltyTransactionType,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    PromoCode,
    Reward,
    RewardType,
    StoreSettings,
    TimeSlotOverride,
)
from .serializers import StoreSettingsSerializer
from .services import OrderCreateData, OrderItemInput

BRUSSELS = ZoneInfo("Europe/Brussels")
# A Monday; the shop opens 11:00-20:00.
PICKUP_DAY = date(2030, 3, 4)
FIXED_NOW = datetime(2030, 3, 4, 10, 0, tzinfo=BRUSSELS)


def at(hour, minute=0, day=PICKUP_DAY):
    return datetime.combine(day, time(hour, minute), tzinfo=BRUSSELS)


def make_user(username="alice", points=0, role=UserRole.CUSTOMER):
    user = get_user_model().objects.create_user(
        username=username,
        password="pass1234",
        email=f"{username}@example.com",
        role=role,
    )
    if points:
        loyalty.bonus(user.pk, points, "Welcome bonus")
        user.refresh_from_db()
    return user


def make_order(pickup_time=None, order_status=OrderStatus.PAID, user=None, points_redeemed=0, points_earned=0):
    return Order.objects.create(
        user=user,
        is_guest=user is None,
        customer_name="Tester",
        customer_email="tester@example.com",
        pickup_time=pickup_time or at(12, 30),
        subtotal=Decimal("10.00"),
        total=Decimal("10.00"),
        points_earned=points_earned,
        points_redeemed=points_redeemed,
        status=order_status,
    )


class FrozenTimeMixin:
    def setUp(self):
        super().setUp()
        patcher = mock.patch("django.utils.timezone.now", return_value=FIXED_NOW)
        patcher.start()
        self.addCleanup(patcher.stop)


class LoyaltyTierTests(TestCase):
    def test_tier_thresholds(self):
        self.assertEqual(loyalty.tier_for(0), LoyaltyTier.BRONZE)
        self.assertEqual(loyalty.tier_for(499), LoyaltyTier.BRONZE)
        self.assertEqual(loyalty.tier_for(500), LoyaltyTier.SILVER)
        self.assertEqual(loyalty.tier_for(999), LoyaltyTier.SILVER)
        self.assertEqual(loyalty.tier_for(1000), LoyaltyTier.GOLD)


class CatalogTests(TestCase):
    def setUp(self):
        self.tea = Product.objects.create(slug="milk-tea", name="Milk Tea", price=Decimal("5.50"))
        self.sold_out = Product.objects.create(
            slug="mango", name="Mango Slush", price=Decimal("6.00"), is_available=False
        )

    def test_lookup_returns_catalog_prices(self):
        quotes = lookup_products([self.tea.pk, self.sold_out.pk])
        self.assertEqual(quotes[self.tea.pk].price, Decimal("5.50"))
        self.assertFalse(quotes[self.sold_out.pk].is_available)

    def test_missing_product_is_rejected(self):
        with self.assertRaises(ProductNotFound):
            quote_products([self.tea.pk, 999999])

    def test_unavailable_product_is_rejected(self):
        with self.assertRaises(ProductUnavailable):
            quote_products([self.tea.pk, self.sold_out.pk])


class PromoCodeTests(FrozenTimeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.promo = PromoCode.objects.create(
            code="summer10",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            valid_from=FIXED_NOW - timedelta(days=1),
            valid_until=FIXED_NOW + timedelta(days=30),
        )

    def test_code_is_stored_upper_case_and_matched_case_insensitively(self):
        self.assertEqual(self.promo.code, "SUMMER10")
        quote = validate_promo_code("Summer10", Decimal("12.00"))
        self.assertEqual(quote.discount_amount, Decimal("1.20"))

    def test_fixed_amount_is_capped_at_subtotal(self):
        self.promo.discount_type = DiscountType.FIXED_AMOUNT
        self.promo.discount_value = Decimal("20.00")
        self.promo.save()
        quote = validate_promo_code("SUMMER10", Decimal("12.00"))
        self.assertEqual(quote.discount_amount, Decimal("12.00"))

    def test_unknown_code(self):
        with self.assertRaises(InvalidCode):
            validate_promo_code("NOPE", Decimal("12.00"))

    def test_inactive_code(self):
        self.promo.is_active = False
        self.promo.save()
        with self.assertRaises(CodeInactive):
            validate_promo_code("SUMMER10", Decimal("12.00"))

    def test_not_yet_valid_and_expired(self):
        with self.assertRaises(CodeNotYetValid):
            validate_promo_code("SUMMER10", Decimal("12.00"), now=FIXED_NOW - timedelta(days=2))
        with self.assertRaises(CodeExpired):
            validate_promo_code("SUMMER10", Decimal("12.00"), now=FIXED_NOW + timedelta(days=31))

    def test_usage_cap(self):
        self.promo.max_uses = 2
        self.promo.used_count = 2
        self.promo.save()
        with self.assertRaises(CodeExhausted):
            validate_promo_code("SUMMER10", Decimal("12.00"))

    def test_minimum_order_amount(self):
        self.promo.min_order_amount = Decimal("15.00")
        self.promo.save()
        with self.assertRaises(MinimumNotMet):
            validate_promo_code("SUMMER10", Decimal("12.00"))

    def test_validate_never_changes_usage_counter(self):
        for _ in range(5):
            validate_promo_code("SUMMER10", Decimal("12.00"))
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 0)

    def test_redeem_increments_once(self):
        redeem_promo_code("SUMMER10", Decimal("12.00"))
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 1)

    def test_redeem_last_use_only_once(self):
        self.promo.max_uses = 1
        self.promo.save()
        redeem_promo_code("SUMMER10", Decimal("12.00"))
        with self.assertRaises(CodeExhausted):
            redeem_promo_code("SUMMER10", Decimal("12.00"))
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 1)


class RewardDiscountTests(TestCase):
    def setUp(self):
        self.user = make_user(points=200)

    def make_reward(self, reward_type, value="2.00", cost=100, available=True):
        return Reward.objects.create(
            slug=f"reward-{reward_type.lower()}-{cost}",
            name=f"{reward_type} reward",
            points_cost=cost,
            reward_type=reward_type,
            reward_value=Decimal(value),
            is_available=available,
        )

    def test_amount_by_reward_type(self):
        subtotal = Decimal("4.00")
        discount = self.make_reward(RewardType.DISCOUNT, value="2.00")
        free_drink = self.make_reward(RewardType.FREE_DRINK, value="6.50")
        topping = self.make_reward(RewardType.FREE_TOPPING, value="0.80")
        upgrade = self.make_reward(RewardType.SIZE_UPGRADE, value="1.00")

        self.assertEqual(resolve_reward_discount(discount, subtotal, self.user).discount_amount, Decimal("2.00"))
        self.assertEqual(resolve_reward_discount(free_drink, subtotal, self.user).discount_amount, Decimal("4.00"))
        self.assertEqual(resolve_reward_discount(topping, subtotal, self.user).discount_amount, Decimal("0.80"))
        self.assertEqual(resolve_reward_discount(upgrade, subtotal, self.user).discount_amount, Decimal("1.00"))

    def test_guest_cannot_use_reward(self):
        reward = self.make_reward(RewardType.DISCOUNT)
        with self.assertRaises(NotAuthenticated):
            resolve_reward_discount(reward, Decimal("10.00"), None)

    def test_unavailable_reward(self):
        reward = self.make_reward(RewardType.DISCOUNT, available=False)
        with self.assertRaises(RewardUnavailable):
            resolve_reward_discount(reward, Decimal("10.00"), self.user)

    def test_balance_pre_check(self):
        reward = self.make_reward(RewardType.DISCOUNT, cost=250)
        with self.assertRaises(InsufficientPoints):
            resolve_reward_discount(reward, Decimal("10.00"), self.user)


class DiscountCombinationTests(TestCase):
    def test_promo_and_reward_stack(self):
        discount, total = combine_discounts(Decimal("12.00"), Decimal("1.20"), Decimal("2.00"))
        self.assertEqual(discount, Decimal("3.20"))
        self.assertEqual(total, Decimal("8.80"))
        self.assertEqual(points_for_total(total, 10, is_guest=False), 88)

    def test_combined_discount_is_capped(self):
        discount, total = combine_discounts(Decimal("3.00"), Decimal("2.50"), Decimal("2.00"))
        self.assertEqual(discount, Decimal("3.00"))
        self.assertEqual(total, Decimal("0.00"))

    def test_points_are_floored_and_zero_for_guests(self):
        self.assertEqual(points_for_total(Decimal("8.79"), 10, is_guest=False), 87)
        self.assertEqual(points_for_total(Decimal("8.80"), 10, is_guest=True), 0)


class LoyaltyLedgerTests(TestCase):
    def setUp(self):
        self.user = make_user(points=100)

    def assertLedgerConsistent(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.loyalty_points, loyalty.ledger_balance(self.user.pk))
        self.assertEqual(self.user.loyalty_tier, loyalty.tier_for(self.user.loyalty_points))
        self.assertGreaterEqual(self.user.loyalty_points, 0)

    def test_earn_appends_transaction_and_updates_tier(self):
        order = make_order(user=self.user)
        loyalty.earn(self.user.pk, 450, order)
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 550)
        self.assertEqual(self.user.loyalty_tier, LoyaltyTier.SILVER)
        entry = LoyaltyTransaction.objects.get(type=LoyaltyTransactionType.EARN)
        self.assertEqual(entry.points, 450)
        self.assertEqual(entry.order, order)

    def test_redeem_debits_when_balance_suffices(self):
        self.assertTrue(loyalty.redeem(self.user.pk, 60, "Free topping"))
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 40)
        self.assertEqual(LoyaltyTransaction.objects.get(type=LoyaltyTransactionType.REDEEM).points, -60)

    def test_redeem_refused_without_writing(self):
        self.assertFalse(loyalty.redeem(self.user.pk, 101, "Too expensive"))
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 100)
        self.assertFalse(LoyaltyTransaction.objects.filter(type=LoyaltyTransactionType.REDEEM).exists())

    def test_stale_reads_cannot_overdraw(self):
        # Both callers saw 100 points before either spent anything.
        stale_balance = self.user.loyalty_points
        self.assertGreaterEqual(stale_balance, 60)
        self.assertTrue(loyalty.redeem(self.user.pk, 60, "first checkout"))
        self.assertFalse(loyalty.redeem(self.user.pk, 60, "second checkout"))
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 40)

    def test_repeated_redemptions_stop_at_floor_of_balance_over_cost(self):
        loyalty.bonus(self.user.pk, 150, "Top up")
        successes = sum(loyalty.redeem(self.user.pk, 60, "reward") for _ in range(10))
        self.assertEqual(successes, 250 // 60)
        self.assertLedgerConsistent()

    def test_refund_and_bonus(self):
        loyalty.refund(self.user.pk, 30, "Order cancelled")
        loyalty.bonus(self.user.pk, 20, "Birthday")
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 150)
        types = set(LoyaltyTransaction.objects.values_list("type", flat=True))
        self.assertIn(LoyaltyTransactionType.ADJUSTMENT, types)
        self.assertIn(LoyaltyTransactionType.BONUS, types)

    def test_negative_adjustment_cannot_go_below_zero(self):
        with self.assertRaises(InsufficientPoints):
            loyalty.adjust(self.user.pk, -150, "Correction")
        loyalty.adjust(self.user.pk, -100, "Correction")
        self.assertLedgerConsistent()
        self.assertEqual(self.user.loyalty_points, 0)

    def test_database_rejects_negative_balance(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                get_user_model().objects.filter(pk=self.user.pk).update(loyalty_points=-1)

    def test_redeem_reward_outside_checkout(self):
        reward = Reward.objects.create(
            slug="free-topping",
            name="Free topping",
            points_cost=80,
            reward_type=RewardType.FREE_TOPPING,
            reward_value=Decimal("0.80"),
        )
        result = loyalty.redeem_reward(self.user, reward)
        self.assertEqual(result.balance, 20)
        self.assertEqual(result.tier, LoyaltyTier.BRONZE)
        with self.assertRaises(InsufficientPoints):
            loyalty.redeem_reward(self.user, reward)
        self.assertLedgerConsistent()


class SlotAvailabilityTests(FrozenTimeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.settings = StoreSettings.get_solo()
        self.settings.slots_per_time_window = 5
        self.settings.save()

    def slot(self, label, now=FIXED_NOW, day=PICKUP_DAY):
        return next(s for s in slots.get_slot_availability(day, now=now) if s.time == label)

    def test_generates_half_hour_slots_until_close_minus_interval(self):
        available = slots.get_slot_availability(PICKUP_DAY, now=FIXED_NOW)
        self.assertEqual(available[0].time, "11:00")
        self.assertEqual(available[-1].time, "19:30")
        self.assertEqual(len(available), 18)

    def test_slots_inside_lead_time_are_excluded(self):
        available = slots.get_slot_availability(PICKUP_DAY, now=at(12, 20))
        self.assertEqual(available[0].time, "13:00")

    def test_override_capacity_and_existing_orders(self):
        TimeSlotOverride.objects.create(date=PICKUP_DAY, time="12:30", max_capacity=2)
        make_order(at(12, 30))
        make_order(at(12, 30))
        slot = self.slot("12:30")
        self.assertEqual(slot.capacity, 2)
        self.assertEqual(slot.available, 0)
        self.assertTrue(slot.is_full)

    def test_limited_flag(self):
        make_order(at(13, 0))
        make_order(at(13, 0))
        slot = self.slot("13:00")
        self.assertEqual(slot.available, 3)
        self.assertTrue(slot.is_limited)
        self.assertFalse(self.slot("13:30").is_limited)

    def test_availability_never_increases_as_orders_are_booked(self):
        previous = self.slot("14:00").available
        for _ in range(6):
            make_order(at(14, 0))
            current = self.slot("14:00").available
            self.assertLessEqual(current, previous)
            previous = current
        self.assertEqual(previous, 0)

    def test_disabled_slot_carries_reason(self):
        TimeSlotOverride.objects.create(date=PICKUP_DAY, time="15:00", is_disabled=True, reason="Staff meeting")
        slot = self.slot("15:00")
        self.assertTrue(slot.is_disabled)
        self.assertEqual(slot.reason, "Staff meeting")
        self.assertFalse(slot.is_bookable)

    def test_cancelled_orders_free_capacity_by_default(self):
        make_order(at(16, 0), order_status=OrderStatus.CANCELLED)
        self.assertEqual(self.slot("16:00").booked, 0)

    def test_cancelled_orders_can_keep_capacity(self):
        self.settings.cancelled_orders_free_slot = False
        self.settings.save()
        make_order(at(16, 0), order_status=OrderStatus.CANCELLED)
        self.assertEqual(self.slot("16:00").booked, 1)

    def test_closed_past_and_far_future_days_have_no_slots(self):
        self.settings.opening_hours = {"monday": {"closed": True}}
        self.settings.save()
        self.assertEqual(slots.get_slot_availability(PICKUP_DAY, now=FIXED_NOW), [])
        self.assertEqual(slots.get_slot_availability(PICKUP_DAY - timedelta(days=1), now=FIXED_NOW), [])
        self.assertEqual(slots.get_slot_availability(PICKUP_DAY + timedelta(days=8), now=FIXED_NOW), [])

    def test_fails_over_to_next_day(self):
        day, available = slots.next_available_day(PICKUP_DAY, now=at(19, 30))
        self.assertEqual(day, PICKUP_DAY + timedelta(days=1))
        self.assertEqual(available[0].time, "11:00")

    def test_check_slot_bookable(self):
        with self.assertRaises(InvalidPickupTime):
            slots.check_slot_bookable(at(12, 15), now=FIXED_NOW)
        TimeSlotOverride.objects.create(date=PICKUP_DAY, time="17:00", is_disabled=True, reason="Closed early")
        with self.assertRaises(SlotDisabled):
            slots.check_slot_bookable(at(17, 0), now=FIXED_NOW)
        TimeSlotOverride.objects.create(date=PICKUP_DAY, time="17:30", max_capacity=1)
        make_order(at(17, 30))
        with self.assertRaises(SlotFull):
            slots.check_slot_bookable(at(17, 30), now=FIXED_NOW)
        self.assertEqual(slots.check_slot_bookable(at(18, 0), now=FIXED_NOW).time, "18:00")

    def test_bulk_disable_and_enable_all(self):
        slots.bulk_disable_slots(PICKUP_DAY, ["11:00", "11:30"])
        self.assertTrue(self.slot("11:00").is_disabled)
        self.assertEqual(self.slot("11:30").reason, "Disabled by admin")
        self.assertEqual(slots.enable_all_slots(PICKUP_DAY), 2)
        self.assertFalse(self.slot("11:00").is_disabled)


class OrderTestMixin(FrozenTimeMixin):
    def setUp(self):
        super().setUp()
        self.tea = Product.objects.create(slug="milk-tea", name="Milk Tea", price=Decimal("6.00"))
        self.jasmine = Product.objects.create(slug="jasmine", name="Jasmine Tea", price=Decimal("5.50"))
        self.promo = PromoCode.objects.create(
            code="TEN",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            valid_from=FIXED_NOW - timedelta(days=1),
            valid_until=FIXED_NOW + timedelta(days=30),
        )
        self.reward = Reward.objects.create(
            slug="two-euro-off",
            name="Two euro off",
            points_cost=100,
            reward_type=RewardType.DISCOUNT,
            reward_value=Decimal("2.00"),
        )

    def checkout(self, items=None, **kwargs):
        data = {
            "items": items or [OrderItemInput(product_id=self.tea.pk, quantity=2)],
            "customer_name": "Alice",
            "customer_email": "alice@example.com",
            "pickup_time": at(12, 30),
        }
        data.update(kwargs)
        return OrderCreateData(**data)


class OrderCreateTests(OrderTestMixin, TestCase):
    def test_prices_come_from_catalog(self):
        order = services.create_order(
            self.checkout(
                items=[
                    OrderItemInput(product_id=self.jasmine.pk, quantity=2, customizations={"sugar_level": 50}),
                    OrderItemInput(product_id=self.tea.pk, quantity=1),
                ]
            ),
            now=FIXED_NOW,
        )
        self.assertEqual(order.subtotal, Decimal("17.00"))
        self.assertEqual(order.total, Decimal("17.00"))
        line = order.items.get(product=self.jasmine)
        self.assertEqual(line.unit_price, Decimal("5.50"))
        self.assertEqual(line.line_total, Decimal("11.00"))
        self.assertEqual(line.customizations, {"sugar_level": 50})
        self.assertEqual(order.status, OrderStatus.PENDING)

        # A later catalog change does not touch the captured price.
        self.jasmine.price = Decimal("9.99")
        self.jasmine.save()
        line.refresh_from_db()
        self.assertEqual(line.unit_price, Decimal("5.50"))

    def test_promo_and_reward_scenario(self):
        user = make_user(points=500)
        order = services.create_order(
            self.checkout(promo_code="ten", reward_id=self.reward.pk),
            user=user,
            now=FIXED_NOW,
        )
        self.assertEqual(order.subtotal, Decimal("12.00"))
        self.assertEqual(order.discount, Decimal("3.20"))
        self.assertEqual(order.total, Decimal("8.80"))
        self.assertEqual(order.points_earned, 88)
        self.assertEqual(order.points_redeemed, 100)
        self.assertFalse(order.is_guest)

        user.refresh_from_db()
        self.assertEqual(user.loyalty_points, 400)
        redeem = LoyaltyTransaction.objects.get(type=LoyaltyTransactionType.REDEEM)
        self.assertEqual(redeem.points, -100)
        self.assertEqual(redeem.order, order)
        # Points are only earned once payment is confirmed.
        self.assertFalse(LoyaltyTransaction.objects.filter(type=LoyaltyTransactionType.EARN).exists())
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 1)

    def test_guest_earns_no_points(self):
        order = services.create_order(self.checkout(), now=FIXED_NOW)
        self.assertTrue(order.is_guest)
        self.assertIsNone(order.user)
        self.assertEqual(order.points_earned, 0)

    def test_discount_never_exceeds_subtotal(self):
        PromoCode.objects.create(
            code="BIG",
            discount_type=DiscountType.FIXED_AMOUNT,
            discount_value=Decimal("50.00"),
            valid_from=FIXED_NOW - timedelta(days=1),
            valid_until=FIXED_NOW + timedelta(days=1),
        )
        order = services.create_order(self.checkout(promo_code="BIG"), now=FIXED_NOW)
        self.assertEqual(order.discount, order.subtotal)
        self.assertEqual(order.total, Decimal("0.00"))

    def test_not_enough_points_persists_nothing(self):
        user = make_user(points=50)
        self.reward.points_cost = 60
        self.reward.save()
        with self.assertRaises(InsufficientPoints):
            services.create_order(self.checkout(reward_id=self.reward.pk), user=user, now=FIXED_NOW)
        self.assertFalse(Order.objects.exists())
        user.refresh_from_db()
        self.assertEqual(user.loyalty_points, 50)

    def test_points_spent_concurrently_roll_back_the_order(self):
        user = make_user(points=100)
        # Another checkout spends the points after this one read the balance.
        self.assertTrue(loyalty.redeem(user.pk, 60, "other checkout"))
        self.assertEqual(user.loyalty_points, 100)

        with self.assertRaises(InsufficientPoints):
            services.create_order(
                self.checkout(promo_code="TEN", reward_id=self.reward.pk),
                user=user,
                now=FIXED_NOW,
            )
        self.assertFalse(Order.objects.exists())
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 0)
        user.refresh_from_db()
        self.assertEqual(user.loyalty_points, 40)
        self.assertEqual(loyalty.ledger_balance(user.pk), 40)

    def test_ledger_refusal_is_compensated(self):
        user = make_user(points=500)
        with mock.patch("shop.loyalty.redeem", return_value=False):
            with self.assertRaises(InsufficientPoints):
                services.create_order(self.checkout(reward_id=self.reward.pk), user=user, now=FIXED_NOW)
        self.assertFalse(Order.objects.exists())

    def test_product_errors_abort_checkout(self):
        self.tea.is_available = False
        self.tea.save()
        with self.assertRaises(ProductUnavailable):
            services.create_order(self.checkout(), now=FIXED_NOW)
        with self.assertRaises(ProductNotFound):
            services.create_order(
                self.checkout(items=[OrderItemInput(product_id=424242, quantity=1)]), now=FIXED_NOW
            )
        self.assertFalse(Order.objects.exists())

    def test_invalid_promo_rejects_checkout(self):
        with self.assertRaises(InvalidCode):
            services.create_order(self.checkout(promo_code="WRONG"), now=FIXED_NOW)
        self.assertFalse(Order.objects.exists())

    def test_full_slot_rejects_checkout(self):
        TimeSlotOverride.objects.create(date=PICKUP_DAY, time="12:30", max_capacity=1)
        services.create_order(self.checkout(), now=FIXED_NOW)
        with self.assertRaises(SlotFull):
            services.create_order(self.checkout(), now=FIXED_NOW)
        self.assertEqual(Order.objects.count(), 1)

    def test_order_number_lookup(self):
        order = services.create_order(self.checkout(), now=FIXED_NOW)
        self.assertTrue(order.order_number.startswith("ORD-"))
        self.assertEqual(services.get_order(order.order_number.lower()), order)
        self.assertEqual(services.get_order(order.pk), order)
        with self.assertRaises(OrderNotFound):
            services.get_order("ORD-MISSING")


class PaymentTests(FrozenTimeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.user = make_user(points=200)

    def test_confirm_payment_awards_points_once(self):
        order = make_order(order_status=OrderStatus.PENDING, user=self.user, points_earned=88)
        services.confirm_payment(order.pk, reference="tr_123")
        services.confirm_payment(order.pk, reference="tr_123")

        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertEqual(order.payment_reference, "tr_123")
        self.assertEqual(LoyaltyTransaction.objects.filter(type=LoyaltyTransactionType.EARN).count(), 1)
        self.user.refresh_from_db()
        self.assertEqual(self.user.loyalty_points, 288)
        self.assertEqual(len(mail.outbox), 1)

    def test_guest_payment_awards_nothing(self):
        order = make_order(order_status=OrderStatus.PENDING)
        services.confirm_payment(order.pk)
        self.assertFalse(LoyaltyTransaction.objects.filter(order=order).exists())

    def test_failed_payment_cancels_and_returns_points(self):
        loyalty.redeem(self.user.pk, 100, "reward")
        order = make_order(order_status=OrderStatus.PENDING, user=self.user, points_redeemed=100)
        services.fail_payment(order.pk)

        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, PaymentStatus.FAILED)
        self.user.refresh_from_db()
        self.assertEqual(self.user.loyalty_points, 200)
        self.assertEqual(loyalty.ledger_balance(self.user.pk), 200)


class OrderStatusTests(FrozenTimeMixin, TestCase):
    def test_forward_path(self):
        order = make_order()
        for next_status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            order = services.update_status(order.pk, next_status)
            self.assertEqual(order.status, next_status)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("ready", mail.outbox[0].subject)

    def test_transitions_outside_table_are_rejected(self):
        pending = make_order(order_status=OrderStatus.PENDING)
        completed = make_order(order_status=OrderStatus.COMPLETED)
        with self.assertRaises(InvalidStatusTransition):
            services.update_status(pending.pk, OrderStatus.READY)
        with self.assertRaises(InvalidStatusTransition):
            services.update_status(completed.pk, OrderStatus.PREPARING)
        with self.assertRaises(InvalidStatusTransition):
            services.update_status(pending.pk, OrderStatus.CANCELLED)
        pending.refresh_from_db()
        self.assertEqual(pending.status, OrderStatus.PENDING)

    def test_marking_paid_awards_points(self):
        user = make_user()
        order = make_order(order_status=OrderStatus.PENDING, user=user, points_earned=40)
        services.update_status(order.pk, OrderStatus.PAID)
        user.refresh_from_db()
        self.assertEqual(user.loyalty_points, 40)

    def test_notification_failure_does_not_fail_transition(self):
        order = make_order(order_status=OrderStatus.PREPARING)
        with mock.patch("shop.notifications.send_mail", side_effect=SMTPException("mail server down")):
            with self.assertLogs("shop.notifications", level="ERROR"):
                order = services.update_status(order.pk, OrderStatus.READY)
        self.assertEqual(order.status, OrderStatus.READY)

    def test_bulk_update_tolerates_partial_failure(self):
        first = make_order()
        second = make_order()
        pending = make_order(order_status=OrderStatus.PENDING)
        result = services.bulk_update_status([first.pk, pending.pk, second.pk], OrderStatus.PREPARING)

        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.failure_count, 1)
        self.assertIn(pending.pk, result.failed)
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.status, OrderStatus.PREPARING)
        self.assertEqual(second.status, OrderStatus.PREPARING)


class CancelOrderTests(FrozenTimeMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.user = make_user(points=300)
        loyalty.redeem(self.user.pk, 100, "reward")
        self.order = make_order(user=self.user, points_redeemed=100)

    def test_cancel_refunds_redeemed_points(self):
        order = services.cancel_order(self.order.pk, CancellationReason.OUT_OF_STOCK)

        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.cancellation_reason, CancellationReason.OUT_OF_STOCK)
        self.assertEqual(order.cancelled_at, FIXED_NOW)
        self.user.refresh_from_db()
        self.assertEqual(self.user.loyalty_points, 300)
        refund = LoyaltyTransaction.objects.get(type=LoyaltyTransactionType.ADJUSTMENT)
        self.assertEqual(refund.points, 100)
        self.assertEqual(refund.order, order)
        self.assertEqual(len(mail.outbox), 1)

    def test_refund_is_not_repeated(self):
        order = services.cancel_order(self.order.pk, CancellationReason.BUSY)
        self.assertIsNone(services.refund_points(order))
        self.assertEqual(LoyaltyTransaction.objects.filter(type=LoyaltyTransactionType.ADJUSTMENT).count(), 1)

    def test_only_paid_or_preparing_can_be_cancelled(self):
        for order_status in (OrderStatus.PENDING, OrderStatus.READY, OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            order = make_order(order_status=order_status)
            with self.assertRaises(InvalidStatusTransition):
                services.cancel_order(order.pk, CancellationReason.BUSY)

    def test_other_requires_custom_reason(self):
        with self.assertRaises(ValidationError):
            services.cancel_order(self.order.pk, CancellationReason.OTHER)
        order = services.cancel_order(self.order.pk, CancellationReason.OTHER, custom_reason="Machine broke")
        self.assertEqual(order.cancellation_note, "Machine broke")

    def test_customer_cancellation_window(self):
        with self.assertRaises(CancellationWindowClosed):
            services.cancel_order(
                self.order.pk,
                CancellationReason.CUSTOMER_REQUEST,
                by_customer=True,
                user=self.user,
                now=FIXED_NOW + timedelta(minutes=31),
            )
        order = services.cancel_order(
            self.order.pk,
            CancellationReason.CUSTOMER_REQUEST,
            by_customer=True,
            user=self.user,
            now=FIXED_NOW + timedelta(minutes=20),
        )
        self.assertEqual(order.status, OrderStatus.CANCELLED)

    def test_customer_cannot_cancel_someone_elses_order(self):
        other = make_user("bob")
        with self.assertRaises(OrderNotFound):
            services.cancel_order(
                self.order.pk, CancellationReason.CUSTOMER_REQUEST, by_customer=True, user=other
            )


class ApiTestCase(OrderTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        cache.clear()
        self.client = APIClient()
        self.staff = make_user("barista", role=UserRole.STAFF)
        self.admin = make_user("owner", role=UserRole.ADMIN)

    def order_payload(self, **overrides):
        payload = {
            "items": [
                # unit_price is not part of the schema and is ignored
                {"product_id": self.tea.pk, "quantity": 2, "unit_price": "0.01", "customizations": {"size": "large"}},
            ],
            "customer_name": "Alice",
            "customer_email": "alice@example.com",
            "pickup_time": at(12, 30).isoformat(),
        }
        payload.update(overrides)
        return payload


class OrderApiTests(ApiTestCase):
    def test_guest_checkout(self):
        response = self.client.post(reverse("orders-list"), data=self.order_payload(promo_code="TEN"), format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["subtotal"], "12.00")
        self.assertEqual(response.data["discount"], "1.20")
        self.assertEqual(response.data["total"], "10.80")
        self.assertEqual(response.data["points_earned"], 0)
        self.assertEqual(response.data["items"][0]["unit_price"], "6.00")

    def test_checkout_failure_reports_specific_code(self):
        user = make_user(points=50)
        self.client.force_authenticate(user)
        response = self.client.post(
            reverse("orders-list"), data=self.order_payload(reward_id=self.reward.pk), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "insufficient_points")
        self.assertFalse(Order.objects.exists())

    def test_guest_checkout_is_rate_limited_per_email(self):
        payload = self.order_payload(items=[{"product_id": 424242, "quantity": 1}])
        for _ in range(5):
            response = self.client.post(reverse("orders-list"), data=payload, format="json")
            self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        payload["customer_email"] = "ALICE@example.com"
        response = self.client.post(reverse("orders-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)

    def test_quantity_bounds(self):
        payload = self.order_payload(items=[{"product_id": self.tea.pk, "quantity": 100}])
        response = self.client.post(reverse("orders-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_lookup_by_order_number(self):
        order = make_order()
        response = self.client.get(reverse("orders-lookup"), data={"q": order.order_number})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["id"], order.pk)
        response = self.client.get(reverse("orders-lookup"), data={"q": "ORD-NOPE"})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_lookup_by_numeric_id_is_limited_to_owner_and_staff(self):
        owner = make_user("victim")
        order = make_order(user=owner)
        url = reverse("orders-lookup")

        response = self.client.get(url, data={"q": str(order.pk)})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertNotIn("customer_email", response.data)

        self.client.force_authenticate(make_user("bob"))
        self.assertEqual(self.client.get(url, data={"q": str(order.pk)}).status_code, status.HTTP_404_NOT_FOUND)

        self.client.force_authenticate(owner)
        response = self.client.get(url, data={"q": str(order.pk)})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["id"], order.pk)

        self.client.force_authenticate(self.staff)
        self.assertEqual(self.client.get(url, data={"q": str(order.pk)}).status_code, status.HTTP_200_OK)

    def test_customers_only_see_their_own_orders(self):
        user = make_user()
        mine = make_order(user=user)
        make_order()
        self.client.force_authenticate(user)
        response = self.client.get(reverse("orders-list"))
        self.assertEqual([row["id"] for row in response.data], [mine.pk])

    def test_status_update_requires_staff(self):
        order = make_order()
        self.client.force_authenticate(make_user())
        response = self.client.post(
            reverse("orders-update-status", kwargs={"pk": order.pk}), data={"status": "PREPARING"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.staff)
        response = self.client.post(
            reverse("orders-update-status", kwargs={"pk": order.pk}), data={"status": "PREPARING"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], OrderStatus.PREPARING)

    def test_invalid_transition_is_conflict(self):
        order = make_order(order_status=OrderStatus.PENDING)
        self.client.force_authenticate(self.staff)
        response = self.client.post(
            reverse("orders-update-status", kwargs={"pk": order.pk}), data={"status": "READY"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "invalid_status_transition")

    def test_bulk_status(self):
        paid = make_order()
        pending = make_order(order_status=OrderStatus.PENDING)
        self.client.force_authenticate(self.staff)
        response = self.client.post(
            reverse("orders-bulk-status"),
            data={"ids": [paid.pk, pending.pk], "status": "PREPARING"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["success_count"], 1)
        self.assertEqual(response.data["failure_count"], 1)

    def test_staff_cancel(self):
        order = make_order()
        self.client.force_authenticate(self.staff)
        response = self.client.post(
            reverse("orders-cancel", kwargs={"pk": order.pk}), data={"reason": "OTHER"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        response = self.client.post(
            reverse("orders-cancel", kwargs={"pk": order.pk}), data={"reason": "BUSY"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], OrderStatus.CANCELLED)

    def test_customer_cancel(self):
        user = make_user()
        order = make_order(user=user)
        self.client.force_authenticate(user)
        response = self.client.post(reverse("orders-customer-cancel", kwargs={"pk": order.pk}), format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["cancellation_reason"], CancellationReason.CUSTOMER_REQUEST)

    def test_order_qr_returns_png(self):
        user = make_user()
        order = make_order(user=user)
        self.client.force_authenticate(user)
        response = self.client.get(reverse("orders-qr", kwargs={"pk": order.pk}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "image/png")


class PromoAndRewardApiTests(ApiTestCase):
    def test_validate_promo_is_read_only(self):
        for _ in range(3):
            response = self.client.post(
                reverse("promo-codes-validate"), data={"code": "ten", "subtotal": "12.00"}, format="json"
            )
            self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["discount_amount"], Decimal("1.20"))
        self.promo.refresh_from_db()
        self.assertEqual(self.promo.used_count, 0)

    def test_validate_unknown_code(self):
        response = self.client.post(
            reverse("promo-codes-validate"), data={"code": "nope", "subtotal": "12.00"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["code"], "invalid_code")

    def test_promo_admin_crud_is_admin_only(self):
        payload = {
            "code": "spring",
            "discount_type": "FIXED_AMOUNT",
            "discount_value": "1.50",
            "valid_from": FIXED_NOW.isoformat(),
            "valid_until": (FIXED_NOW + timedelta(days=10)).isoformat(),
        }
        self.client.force_authenticate(self.staff)
        self.assertEqual(
            self.client.post(reverse("promo-codes-list"), data=payload, format="json").status_code,
            status.HTTP_403_FORBIDDEN,
        )
        self.client.force_authenticate(self.admin)
        response = self.client.post(reverse("promo-codes-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["code"], "SPRING")

    def test_redeem_reward(self):
        user = make_user(points=150)
        self.client.force_authenticate(user)
        response = self.client.post(reverse("rewards-redeem", kwargs={"pk": self.reward.pk}), format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["points"], 50)
        response = self.client.post(reverse("rewards-redeem", kwargs={"pk": self.reward.pk}), format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_loyalty_summary(self):
        user = make_user(points=120)
        self.client.force_authenticate(user)
        response = self.client.get(reverse("loyalty-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["points"], 120)
        self.assertEqual(response.data["tier"], LoyaltyTier.BRONZE)
        self.assertEqual(len(response.data["transactions"]), 1)

    def test_admin_bonus_and_adjust(self):
        user = make_user(points=10)
        self.client.force_authenticate(self.admin)
        response = self.client.post(
            reverse("loyalty-bonus"), data={"user_id": user.pk, "points": 500}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["tier"], LoyaltyTier.SILVER)
        response = self.client.post(
            reverse("loyalty-adjust"), data={"user_id": user.pk, "points": -1000}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(loyalty.ledger_balance(user.pk), 510)


class TimeSlotApiTests(ApiTestCase):
    def test_availability(self):
        response = self.client.get(reverse("time-slots-availability"), data={"date": PICKUP_DAY.isoformat()})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["slots"][0]["time"], "11:00")
        self.assertEqual(response.data["default_capacity"], 10)

    def test_availability_requires_valid_date(self):
        response = self.client.get(reverse("time-slots-availability"), data={"date": "2030-99-99"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_failover_to_next_day(self):
        settings = StoreSettings.get_solo()
        settings.opening_hours = {"tuesday": {"open": "11:00", "close": "20:00"}}
        settings.save()
        response = self.client.get(
            reverse("time-slots-availability"), data={"date": PICKUP_DAY.isoformat(), "failover": "1"}
        )
        self.assertEqual(response.data["date"], (PICKUP_DAY + timedelta(days=1)).isoformat())

    def test_bulk_disable_is_admin_only(self):
        payload = {"date": PICKUP_DAY.isoformat(), "times": ["12:00", "12:30"], "reason": "Private event"}
        self.client.force_authenticate(self.staff)
        self.assertEqual(
            self.client.post(reverse("time-slot-overrides-bulk-disable"), data=payload, format="json").status_code,
            status.HTTP_403_FORBIDDEN,
        )
        self.client.force_authenticate(self.admin)
        response = self.client.post(reverse("time-slot-overrides-bulk-disable"), data=payload, format="json")
        self.assertEqual(response.data["disabled"], 2)
        self.assertEqual(TimeSlotOverride.objects.filter(is_disabled=True).count(), 2)

    def test_override_upsert(self):
        self.client.force_authenticate(self.admin)
        url = reverse("time-slot-overrides-list")
        self.client.post(url, data={"date": PICKUP_DAY.isoformat(), "time": "13:00", "max_capacity": 2}, format="json")
        response = self.client.post(
            url, data={"date": PICKUP_DAY.isoformat(), "time": "13:00", "max_capacity": 4}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(TimeSlotOverride.objects.get().max_capacity, 4)

    def test_store_settings_update(self):
        self.client.force_authenticate(self.admin)
        response = self.client.post(reverse("settings-list"), data={"points_per_euro": 5}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(StoreSettings.get_solo().points_per_euro, 5)

    def test_store_settings_reject_invalid_opening_hours(self):
        self.client.force_authenticate(self.admin)
        bad_hours = dict(StoreSettings.get_solo().opening_hours)
        bad_hours["monday"] = {"open": "25:00", "close": "ab:cd"}
        response = self.client.post(reverse("settings-list"), data={"opening_hours": bad_hours}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        self.client.force_authenticate(None)
        response = self.client.get(reverse("time-slots-availability"), data={"date": PICKUP_DAY.isoformat()})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["slots"][0]["time"], "11:00")


class StoreSettingsSerializerTests(TestCase):
    def serializer(self, data):
        return StoreSettingsSerializer(StoreSettings.get_solo(), data=data, partial=True)

    def test_slot_interval_bounds(self):
        self.assertFalse(self.serializer({"slot_interval_minutes": 0}).is_valid())
        self.assertFalse(self.serializer({"slot_interval_minutes": 600}).is_valid())
        self.assertTrue(self.serializer({"slot_interval_minutes": 15}).is_valid())

    def test_opening_hours_must_be_valid_times(self):
        serializer = self.serializer({"opening_hours": {"monday": {"open": "25:00", "close": "ab:cd"}}})
        self.assertFalse(serializer.is_valid())
        self.assertIn("opening_hours", serializer.errors)

    def test_opening_hours_reject_unknown_weekday(self):
        serializer = self.serializer({"opening_hours": {"funday": {"open": "11:00", "close": "20:00"}}})
        self.assertFalse(serializer.is_valid())

    def test_opening_must_precede_closing(self):
        serializer = self.serializer({"opening_hours": {"monday": {"open": "20:00", "close": "11:00"}}})
        self.assertFalse(serializer.is_valid())

    def test_closed_days_and_valid_hours_are_accepted(self):
        serializer = self.serializer(
            {
                "opening_hours": {
                    "monday": {"closed": True},
                    "tuesday": {"open": "09:30", "close": "18:00"},
                }
            }
        )
        self.assertTrue(serializer.is_valid(), serializer.errors)


@override_settings(PAYMENT_WEBHOOK_TOKEN="webhook-secret")
class PaymentWebhookApiTests(ApiTestCase):
    def test_rejects_missing_token(self):
        order = make_order(order_status=OrderStatus.PENDING)
        response = self.client.post(
            reverse("payments-webhook"), data={"order": order.order_number, "status": "paid"}, format="json"
        )
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_paid_webhook_earns_points(self):
        user = make_user()
        order = make_order(order_status=OrderStatus.PENDING, user=user, points_earned=88)
        response = self.client.post(
            reverse("payments-webhook"),
            data={"order": order.order_number, "status": "paid", "reference": "tr_1"},
            format="json",
            HTTP_X_WEBHOOK_TOKEN="webhook-secret",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["order_status"], OrderStatus.PAID)
        user.refresh_from_db()
        self.assertEqual(user.loyalty_points, 88)

    def test_failed_webhook_cancels(self):
        order = make_order(order_status=OrderStatus.PENDING)
        response = self.client.post(
            reverse("payments-webhook"),
            data={"order": order.pk, "status": "expired"},
            format="json",
            HTTP_X_WEBHOOK_TOKEN="webhook-secret",
        )
        self.assertEqual(response.data["order_status"], OrderStatus.CANCELLED)
