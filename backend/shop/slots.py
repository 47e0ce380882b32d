from collections import Counter
from dataclasses import dataclass
from datetime import date as date_cls, datetime, time, timedelta
import logging

from django.db import transaction
from django.utils import timezone

from .exceptions import InvalidPickupTime, SlotDisabled, SlotFull
from .models import Order, OrderStatus, StoreSettings, TimeSlotOverride

logger = logging.getLogger(__name__)

LIMITED_THRESHOLD = 3
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class SlotAvailability:
    time: str
    starts_at: datetime
    capacity: int
    booked: int
    is_disabled: bool = False
    reason: str | None = None

    @property
    def available(self) -> int:
        return max(0, self.capacity - self.booked)

    @property
    def is_full(self) -> bool:
        return self.available == 0

    @property
    def is_limited(self) -> bool:
        return 0 < self.available <= LIMITED_THRESHOLD

    @property
    def is_bookable(self) -> bool:
        return not self.is_disabled and not self.is_full


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def opening_hours_for(settings: StoreSettings, day: date_cls) -> tuple[time, time] | None:
    hours = (settings.opening_hours or {}).get(WEEKDAYS[day.weekday()])
    if not hours or hours.get("closed") or not hours.get("open") or not hours.get("close"):
        return None
    return _parse_hhmm(hours["open"]), _parse_hhmm(hours["close"])


def candidate_slot_starts(settings: StoreSettings, day: date_cls) -> list[datetime]:
    """Slot start times between opening and ``close - interval``, inclusive."""
    hours = opening_hours_for(settings, day)
    if hours is None:
        return []
    tz = timezone.get_current_timezone()
    opens_at = timezone.make_aware(datetime.combine(day, hours[0]), tz)
    last_start = timezone.make_aware(datetime.combine(day, hours[1]), tz) - timedelta(
        minutes=settings.slot_interval_minutes
    )
    starts = []
    current = opens_at
    while current <= last_start:
        starts.append(current)
        current += timedelta(minutes=settings.slot_interval_minutes)
    return starts


def _booked_counts(settings: StoreSettings, day: date_cls) -> Counter:
    tz = timezone.get_current_timezone()
    start_of_day = timezone.make_aware(datetime.combine(day, time.min), tz)
    orders = Order.objects.filter(
        pickup_time__gte=start_of_day,
        pickup_time__lt=start_of_day + timedelta(days=1),
    )
    if settings.cancelled_orders_free_slot:
        orders = orders.exclude(status=OrderStatus.CANCELLED)
    return Counter(
        timezone.localtime(pickup, tz).strftime("%H:%M")
        for pickup in orders.values_list("pickup_time", flat=True)
    )


def is_bookable_date(settings: StoreSettings, day: date_cls, now=None) -> bool:
    today = timezone.localdate(now or timezone.now())
    return today <= day <= today + timedelta(days=settings.max_advance_order_days)


def get_slot_availability(day: date_cls, now=None, settings: StoreSettings | None = None) -> list[SlotAvailability]:
    """Bookable pickup slots for ``day`` with remaining capacity.

    Slots starting before ``now + min_pickup_minutes`` are left out entirely.
    """
    now = now or timezone.now()
    settings = settings or StoreSettings.get_solo()
    if not is_bookable_date(settings, day, now=now):
        return []

    earliest = now + timedelta(minutes=settings.min_pickup_minutes)
    overrides = {override.time: override for override in TimeSlotOverride.objects.filter(date=day)}
    booked = _booked_counts(settings, day)

    slots = []
    for starts_at in candidate_slot_starts(settings, day):
        if starts_at < earliest:
            continue
        label = timezone.localtime(starts_at).strftime("%H:%M")
        override = overrides.get(label)
        capacity = settings.slots_per_time_window
        if override is not None and override.max_capacity is not None:
            capacity = override.max_capacity
        slots.append(
            SlotAvailability(
                time=label,
                starts_at=starts_at,
                capacity=capacity,
                booked=booked.get(label, 0),
                is_disabled=bool(override and override.is_disabled),
                reason=override.reason if override else None,
            )
        )
    return slots


def next_available_day(day: date_cls, now=None) -> tuple[date_cls | None, list[SlotAvailability]]:
    """Starting at ``day``, move forward one calendar day at a time until a
    day with at least one eligible slot is found."""
    now = now or timezone.now()
    settings = StoreSettings.get_solo()
    current = day
    while is_bookable_date(settings, current, now=now):
        slots = get_slot_availability(current, now=now, settings=settings)
        if slots:
            return current, slots
        current += timedelta(days=1)
    return None, []


def check_slot_bookable(pickup_time: datetime, now=None) -> SlotAvailability:
    local = timezone.localtime(pickup_time)
    label = local.strftime("%H:%M")
    slot = next(
        (slot for slot in get_slot_availability(local.date(), now=now) if slot.starts_at == local),
        None,
    )
    if slot is None:
        raise InvalidPickupTime(f"{local:%Y-%m-%d} {label} is not a bookable pickup slot.")
    if slot.is_disabled:
        raise SlotDisabled(slot.reason or "This time slot is not available.")
    if slot.is_full:
        raise SlotFull(f"The {label} slot is full. Please pick another time.")
    return slot


def upsert_override(day: date_cls, time_label: str, is_disabled=False, max_capacity=None, reason=None):
    override, _ = TimeSlotOverride.objects.update_or_create(
        date=day,
        time=time_label,
        defaults={"is_disabled": is_disabled, "max_capacity": max_capacity, "reason": reason},
    )
    return override


@transaction.atomic
def bulk_disable_slots(day: date_cls, times: list[str], reason: str | None = None) -> int:
    reason = reason or "Disabled by admin"
    for time_label in times:
        TimeSlotOverride.objects.update_or_create(
            date=day,
            time=time_label,
            defaults={"is_disabled": True, "reason": reason},
        )
    logger.info("Disabled %s slots on %s (%s)", len(times), day, reason)
    return len(times)


def enable_all_slots(day: date_cls) -> int:
    deleted, _ = TimeSlotOverride.objects.filter(date=day, is_disabled=True).delete()
    return deleted
