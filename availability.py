"""
Availability checks for a vehicle over a requested interval.

Two flavours with different failure policies:

* check_listing_availability - storefront browsing. A failed lookup is logged
  and the vehicle is shown as available (fail open).
* ensure_available - anything that commits a hold. A conflict or a store
  error aborts the operation (fail closed).
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import BUSINESS_TIMEZONE
from db_operations import find_holding_reservations, find_overlapping_blocks, list_vehicles
from errors import ConflictError, ValidationError
from models import Vehicle, local_now

logger = logging.getLogger(__name__)

START_OF_DAY = time(0, 0, 0)
END_OF_DAY = time(23, 59, 59)
DEFAULT_HANDOVER_TIME = time(10, 0)

# Window used when no dates are selected: "is it free right now"
INSTANT = timedelta(seconds=1)


@dataclass
class AvailabilityResult:
    is_available: bool
    reason: Optional[str] = None
    conflict_type: Optional[str] = None
    warning: Optional[str] = None


def to_business_time(value: datetime) -> datetime:
    """Naive wall-clock time at the rental station."""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(BUSINESS_TIMEZONE)).replace(tzinfo=None)


def _coerce(value, default_clock: time) -> datetime:
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid date: {value!r}") from None
    if isinstance(value, datetime):
        return to_business_time(value)
    if isinstance(value, date):
        return datetime.combine(value, default_clock)
    raise ValidationError(f"Invalid date: {value!r}")


def combine_handover(day: date, clock: Optional[time] = None) -> datetime:
    """A calendar date plus the customer's chosen handover time (10:00 if none)."""
    return datetime.combine(day, clock or DEFAULT_HANDOVER_TIME)


def _interval(pickup, return_date, start_clock: time, end_clock: time) -> Tuple[datetime, datetime]:
    if pickup is None or return_date is None:
        raise ValidationError("Both pickup and return dates are required")
    start = _coerce(pickup, start_clock)
    end = _coerce(return_date, end_clock)
    if start >= end:
        raise ValidationError("Return date must be after pickup date")
    return start, end


def normalize_interval(pickup=None, return_date=None) -> Tuple[datetime, datetime]:
    """
    Turn caller input into a concrete [start, end) interval.

    Calendar dates expand to the whole day (pickup at 00:00:00, return at
    23:59:59). No dates at all means "right now".
    """
    if pickup is None and return_date is None:
        now = local_now()
        return now, now + INSTANT
    return _interval(pickup, return_date, START_OF_DAY, END_OF_DAY)


def booking_interval(pickup, return_date) -> Tuple[datetime, datetime]:
    """Rental period of a booking. A bare calendar date means a 10:00 handover."""
    return _interval(pickup, return_date, DEFAULT_HANDOVER_TIME, DEFAULT_HANDOVER_TIME)


async def check_availability(
    session: AsyncSession,
    vehicle_id: int,
    pickup=None,
    return_date=None,
    exclude_reservation_id: Optional[int] = None,
    exclude_block_id: Optional[int] = None,
) -> AvailabilityResult:
    """Report whether the vehicle is free over the interval, and why not if it isn't."""
    start, end = normalize_interval(pickup, return_date)

    reservations = await find_holding_reservations(
        session, vehicle_id, start, end, exclude_id=exclude_reservation_id
    )
    if reservations:
        logger.info(f"Vehicle {vehicle_id} has {len(reservations)} conflicting reservation(s) for {start} - {end}")
        return AvailabilityResult(
            is_available=False,
            reason="Vehicle is already booked for this period",
            conflict_type="booking",
        )

    blocks = await find_overlapping_blocks(session, vehicle_id, start, end, exclude_id=exclude_block_id)
    if blocks:
        logger.info(f"Vehicle {vehicle_id} is blocked for {start} - {end}: {blocks[0].reason}")
        return AvailabilityResult(
            is_available=False,
            reason=blocks[0].reason or "Vehicle is blocked for this period",
            conflict_type="block",
        )

    return AvailabilityResult(is_available=True)


async def ensure_available(
    session: AsyncSession,
    vehicle_id: int,
    pickup,
    return_date,
    exclude_reservation_id: Optional[int] = None,
    exclude_block_id: Optional[int] = None,
):
    """Raise ConflictError unless the vehicle is free. Store errors propagate."""
    result = await check_availability(
        session,
        vehicle_id,
        pickup,
        return_date,
        exclude_reservation_id=exclude_reservation_id,
        exclude_block_id=exclude_block_id,
    )
    if not result.is_available:
        raise ConflictError(result.reason, kind=result.conflict_type)


async def check_listing_availability(
    session: AsyncSession,
    vehicle_id: int,
    pickup=None,
    return_date=None,
) -> AvailabilityResult:
    """
    Availability for browsing: a failed lookup shows the vehicle rather than
    hiding it. Malformed dates are the caller's error and still raise.
    """
    start, end = normalize_interval(pickup, return_date)
    try:
        return await check_availability(session, vehicle_id, start, end)
    except (SQLAlchemyError, ValidationError) as e:
        logger.warning(f"⚠️  Availability check failed for vehicle {vehicle_id}, showing as available: {e}")
        return AvailabilityResult(
            is_available=True,
            warning="Availability could not be verified",
        )


async def list_vehicles_with_availability(
    session: AsyncSession,
    pickup=None,
    return_date=None,
) -> List[Tuple[Vehicle, AvailabilityResult]]:
    """Storefront listing: every bookable vehicle with its availability for the window (or now)."""
    # Validate the window once so a malformed request fails before any lookups
    normalize_interval(pickup, return_date)

    vehicles = await list_vehicles(session)
    listing = []
    for vehicle in vehicles:
        result = await check_listing_availability(session, vehicle.id, pickup, return_date)
        listing.append((vehicle, result))
    logger.info(f"Listing {len(listing)} vehicles ({sum(1 for _, r in listing if r.is_available)} available)")
    return listing
