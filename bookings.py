"""
Booking service: quotes, online checkout, staff bookings and payment callbacks.

Every write path follows the same shape inside one transaction:

    sweep stale holds -> lock vehicle -> check availability -> price with
    freshly loaded fees -> insert/update

so the availability check and the write it guards cannot interleave with
another request for the same vehicle.
"""
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from availability import AvailabilityResult, booking_interval, check_availability, ensure_available
from config import ALLOWED_REDIRECT_ORIGINS, CHECKOUT_HOLD_MINUTES
from db_operations import (
    get_reservation_by_gateway_session,
    get_reservation_by_guest_token,
    get_vehicle,
    load_fee_configuration,
    load_settings,
    lock_vehicle,
    save_settings,
    write_transaction,
    hold_lapsed,
)
from errors import ConfigurationError, ConflictError, PaymentError, ValidationError
from lifecycle import (
    Actor,
    confirm_payment,
    expire_reservation,
    fail_payment,
    sweep_stale_holds,
    require_actor,
)
from models import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Reservation,
    Vehicle,
    VehicleStatus,
    local_now,
    parse_payment_method,
    utc_now,
)
from pricing import FeeConfiguration, Location, PriceBreakdown, price_booking, resolve_location

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class BookingRequest:
    vehicle_id: int
    pickup: datetime
    return_date: datetime
    pickup_location: str = "headquarters"
    return_location: str = "headquarters"
    pickup_address: Optional[str] = None
    return_address: Optional[str] = None
    unlimited_km: bool = False
    payment_method: PaymentMethod = PaymentMethod.CARD
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: Optional[str] = None
    customer_age: Optional[int] = None
    notes: Optional[str] = None
    contract_number: Optional[str] = None
    expected_total: Optional[float] = None


@dataclass
class Quote:
    vehicle: Vehicle
    pickup: datetime
    return_date: datetime
    pickup_location: Location
    return_location: Location
    breakdown: PriceBreakdown
    availability: AvailabilityResult


@dataclass
class CheckoutResult:
    reservation: Reservation
    breakdown: PriceBreakdown
    session_id: str
    checkout_url: str


@dataclass
class PaymentEventResult:
    outcome: str
    reservation_id: Optional[int] = None
    details: dict = field(default_factory=dict)


def _resolve_request(request: BookingRequest):
    start, end = booking_interval(request.pickup, request.return_date)
    pickup_location = resolve_location(request.pickup_location, request.pickup_address)
    return_location = resolve_location(request.return_location, request.return_address)
    return start, end, pickup_location, return_location


def _validate_customer(request: BookingRequest, vehicle: Vehicle, age_required: bool = True):
    if not (request.customer_name or "").strip():
        raise ValidationError("Customer name is required")
    if not EMAIL_PATTERN.match((request.customer_email or "").strip()):
        raise ValidationError("A valid email address is required")
    if request.customer_age is None:
        if age_required:
            raise ValidationError("Customer age is required")
    elif request.customer_age < vehicle.minimum_age:
        raise ValidationError(f"Driver must be at least {vehicle.minimum_age} years old for this vehicle")


def validate_redirect_url(url: str, allowed_origins=None) -> str:
    """Checkout redirect targets must point back at one of our own frontends."""
    allowed_origins = ALLOWED_REDIRECT_ORIGINS if allowed_origins is None else allowed_origins
    parsed = urlparse(url or "")
    origin = f"{parsed.scheme}://{parsed.netloc}"
    if parsed.scheme not in ("http", "https") or origin not in allowed_origins:
        raise ValidationError(f"Redirect URL not allowed: {url}")
    return url


def _ensure_bookable(vehicle: Vehicle):
    if vehicle.status == VehicleStatus.MAINTENANCE:
        raise ConflictError("Vehicle is under maintenance", kind="maintenance")


def _build_reservation(
    request: BookingRequest,
    vehicle: Vehicle,
    start: datetime,
    end: datetime,
    pickup_location: Location,
    return_location: Location,
    breakdown: PriceBreakdown,
) -> Reservation:
    cash = breakdown.payment_method == PaymentMethod.CASH
    return Reservation(
        vehicle_id=vehicle.id,
        customer_name=request.customer_name.strip(),
        customer_email=request.customer_email.strip(),
        customer_phone=request.customer_phone,
        customer_age=request.customer_age,
        pickup_date=start,
        return_date=end,
        pickup_location=pickup_location.name,
        pickup_location_address=pickup_location.address,
        pickup_location_fee=pickup_location.fee,
        pickup_location_custom=pickup_location.is_custom,
        return_location=return_location.name,
        return_location_address=return_location.address,
        return_location_fee=return_location.fee,
        return_location_custom=return_location.is_custom,
        rental_days=breakdown.rental_days,
        rental_cost=breakdown.rental_cost,
        cleaning_fee=breakdown.cleaning_fee,
        location_fees=breakdown.location_fees,
        after_hours_fee=breakdown.after_hours_fee,
        unlimited_km=request.unlimited_km,
        unlimited_km_fee=breakdown.unlimited_km_fee,
        total_price=breakdown.total,
        payment_method=breakdown.payment_method,
        payment_status=PaymentStatus.PENDING,
        deposit_amount=breakdown.deposit_amount if cash else None,
        remaining_amount=breakdown.remaining_amount if cash else None,
        fuel_charge=0.0,
        notes=request.notes,
        contract_number=request.contract_number,
        guest_token=secrets.token_urlsafe(24),
    )


async def quote_reservation(session: AsyncSession, request: BookingRequest) -> Quote:
    """Price a prospective booking and report whether the vehicle is free. Writes nothing."""
    start, end, pickup_location, return_location = _resolve_request(request)
    vehicle = await get_vehicle(session, request.vehicle_id)
    config = await load_fee_configuration(session)
    breakdown = price_booking(
        pickup=start,
        return_date=end,
        daily_rate=vehicle.price_per_day,
        pickup_location=pickup_location,
        return_location=return_location,
        unlimited_km=request.unlimited_km,
        config=config,
        payment_method=parse_payment_method(request.payment_method),
    )
    if vehicle.status == VehicleStatus.MAINTENANCE:
        availability = AvailabilityResult(False, "Vehicle is under maintenance", "maintenance")
    else:
        availability = await check_availability(session, vehicle.id, start, end)
    return Quote(vehicle, start, end, pickup_location, return_location, breakdown, availability)


async def _insert_reservation(
    session: AsyncSession,
    request: BookingRequest,
    booking_status: BookingStatus,
    age_required: bool,
    created_by: Optional[str] = None,
    hold_minutes: Optional[int] = None,
):
    """Shared check-then-insert for online and staff bookings. Runs inside the caller's transaction."""
    start, end, pickup_location, return_location = _resolve_request(request)
    if start < local_now():
        raise ValidationError("Pickup date cannot be in the past")
    payment_method = parse_payment_method(request.payment_method)

    await sweep_stale_holds(session)
    vehicle = await lock_vehicle(session, request.vehicle_id)
    _ensure_bookable(vehicle)
    _validate_customer(request, vehicle, age_required=age_required)
    await ensure_available(session, vehicle.id, start, end)

    config = await load_fee_configuration(session)
    breakdown = price_booking(
        pickup=start,
        return_date=end,
        daily_rate=vehicle.price_per_day,
        pickup_location=pickup_location,
        return_location=return_location,
        unlimited_km=request.unlimited_km,
        config=config,
        payment_method=payment_method,
    )
    if request.expected_total is not None and round(request.expected_total, 2) != breakdown.total:
        logger.warning(
            f"⚠️  Client total EUR{request.expected_total:.2f} differs from server total "
            f"EUR{breakdown.total:.2f} for vehicle {vehicle.id} - charging server total"
        )

    reservation = _build_reservation(request, vehicle, start, end, pickup_location, return_location, breakdown)
    reservation.booking_status = booking_status
    reservation.created_by = created_by
    if hold_minutes is not None:
        reservation.hold_expires_at = utc_now() + timedelta(minutes=hold_minutes)
    session.add(reservation)
    await session.flush()

    logger.info(
        f"[INSERT] Reservation ID: {reservation.id} | Vehicle: {vehicle.id} | "
        f"Status: {booking_status.value} | {start} - {end} | Total: EUR{breakdown.total:.2f}"
    )
    return reservation, breakdown


async def start_checkout(
    session: AsyncSession,
    reservation: Reservation,
    gateway,
    success_url: str,
    cancel_url: str,
):
    """
    Open the gateway checkout for a freshly inserted PendingPayment reservation.

    A gateway failure marks the payment failed (which releases the vehicle)
    and re-raises the PaymentError.
    """
    amount = reservation.deposit_amount if reservation.payment_method == PaymentMethod.CASH else reservation.total_price
    try:
        checkout = await gateway.create_checkout_session(
            reservation_id=reservation.id,
            amount=amount,
            description=f"Reservation #{reservation.id}",
            customer_email=reservation.customer_email,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except PaymentError:
        async with write_transaction(session):
            fail_payment(reservation)
        raise

    async with write_transaction(session):
        reservation.gateway_session_id = checkout.session_id
    return checkout


async def create_reservation(
    session: AsyncSession,
    request: BookingRequest,
    gateway,
    success_url: str,
    cancel_url: str,
    hold_minutes: int = CHECKOUT_HOLD_MINUTES,
) -> CheckoutResult:
    """
    Online booking: hold the vehicle as PendingPayment and open a checkout.

    Raises ValidationError for bad input, ConflictError if the vehicle is
    taken (including by a concurrent request that committed first) and
    PaymentError if the gateway cannot open a checkout.
    """
    validate_redirect_url(success_url)
    validate_redirect_url(cancel_url)

    async with write_transaction(session):
        reservation, breakdown = await _insert_reservation(
            session,
            request,
            BookingStatus.PENDING_PAYMENT,
            age_required=True,
            hold_minutes=hold_minutes,
        )

    checkout = await start_checkout(session, reservation, gateway, success_url, cancel_url)
    return CheckoutResult(reservation, breakdown, checkout.session_id, checkout.url)


async def create_manual_reservation(
    session: AsyncSession,
    request: BookingRequest,
    actor: Actor,
    created_by: Optional[str] = None,
) -> Reservation:
    """Staff booking taken over the phone or at the counter. Starts as PendingVerification."""
    require_actor(actor, Actor.ADMIN)
    async with write_transaction(session):
        reservation, _ = await _insert_reservation(
            session,
            request,
            BookingStatus.PENDING_VERIFICATION,
            age_required=False,
            created_by=created_by or actor.value,
        )
    return reservation


async def _refund_late_payment(reservation: Reservation, payment_id: Optional[str], gateway):
    if not payment_id:
        raise PaymentError(f"Cannot refund payment for reservation {reservation.id}: no payment id")
    await gateway.refund_payment(payment_id)
    reservation.gateway_payment_id = payment_id
    reservation.refunded_at = utc_now()
    logger.warning(f"[REFUND] Reservation {reservation.id}: late payment {payment_id} refunded")


async def _handle_checkout_completed(session: AsyncSession, reservation: Reservation, payment_id, gateway):
    if reservation.payment_captured:
        return "already_processed"

    if reservation.booking_status == BookingStatus.PENDING_PAYMENT and hold_lapsed(reservation, utc_now()):
        expire_reservation(reservation)

    # Expired, or a failed payment that released the car: someone else may have it now
    released = reservation.booking_status == BookingStatus.EXPIRED or (
        reservation.booking_status == BookingStatus.PENDING_PAYMENT
        and reservation.payment_status == PaymentStatus.FAILED
    )
    if released:
        await lock_vehicle(session, reservation.vehicle_id)
        result = await check_availability(
            session,
            reservation.vehicle_id,
            reservation.pickup_date,
            reservation.return_date,
            exclude_reservation_id=reservation.id,
        )
        if not result.is_available:
            if reservation.booking_status == BookingStatus.PENDING_PAYMENT:
                expire_reservation(reservation)
            await _refund_late_payment(reservation, payment_id, gateway)
            return "conflict_refunded"
        confirm_payment(reservation, payment_id)
        return "confirmed"

    if reservation.booking_status == BookingStatus.PENDING_PAYMENT:
        confirm_payment(reservation, payment_id)
        return "confirmed"

    # Cancelled (or otherwise closed) while the customer was paying
    await _refund_late_payment(reservation, payment_id, gateway)
    return "refunded"


async def handle_payment_event(
    session: AsyncSession,
    event: dict,
    gateway=None,
    notifier=None,
) -> PaymentEventResult:
    """
    Apply a verified gateway webhook event. Replays are harmless.

    Outcomes: confirmed, already_processed, conflict_refunded, refunded,
    expired, failed, ignored.
    """
    event_type = event.get("type")
    data = event.get("data") or {}
    session_id = data.get("session_id")
    if event_type not in ("checkout.completed", "checkout.expired", "payment.failed"):
        logger.info(f"Ignoring payment event {event_type}")
        return PaymentEventResult("ignored")
    if not session_id:
        raise ValidationError("Payment event has no session id")

    async with write_transaction(session):
        await sweep_stale_holds(session)
        reservation = await get_reservation_by_gateway_session(session, session_id)

        if event_type == "checkout.completed":
            outcome = await _handle_checkout_completed(session, reservation, data.get("payment_id"), gateway)
        elif event_type == "checkout.expired":
            if reservation.booking_status == BookingStatus.PENDING_PAYMENT and not reservation.payment_captured:
                expire_reservation(reservation)
                outcome = "expired"
            else:
                outcome = "already_processed"
        else:
            if (
                reservation.booking_status == BookingStatus.PENDING_PAYMENT
                and reservation.payment_status == PaymentStatus.PENDING
            ):
                fail_payment(reservation)
                outcome = "failed"
            else:
                outcome = "already_processed"

    logger.info(f"Payment event {event_type} for reservation {reservation.id}: {outcome}")
    if outcome == "confirmed" and notifier is not None:
        await notifier.send("booking_confirmed", reservation)
    elif outcome in ("conflict_refunded", "refunded") and notifier is not None:
        await notifier.send("booking_cancelled", reservation)

    return PaymentEventResult(outcome, reservation.id, {"booking_status": reservation.booking_status.value})


async def get_reservation_for_guest(session: AsyncSession, guest_token: str) -> Reservation:
    if not guest_token:
        raise ValidationError("Guest token is required")
    return await get_reservation_by_guest_token(session, guest_token)


async def expire_stale_holds(session: AsyncSession, now=None) -> int:
    """Release every lapsed checkout hold. Returns how many reservations were expired."""
    async with write_transaction(session):
        expired = await sweep_stale_holds(session, now)
    return len(expired)


async def update_fee_configuration(session: AsyncSession, updates: dict, actor: Actor) -> FeeConfiguration:
    """
    Change fee settings. The result must still be a complete, valid
    configuration; otherwise nothing is written.
    """
    require_actor(actor, Actor.ADMIN)
    async with write_transaction(session):
        current = await load_settings(session)
        merged = dict(current)
        for key, value in updates.items():
            if not isinstance(value, dict):
                raise ValidationError(f"Setting '{key}' must be an object")
            merged[key] = {**(current.get(key) or {}), **value}
        try:
            config = FeeConfiguration.from_settings(merged)
        except ConfigurationError as e:
            raise ValidationError(e.message) from e
        await save_settings(session, {key: merged[key] for key in updates})

    logger.info(f"Fee configuration updated: {', '.join(updates)}")
    return config
