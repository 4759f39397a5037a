"""
Reservation lifecycle: booking status x payment status x fuel custody.

transition() is the only place booking_status changes. It checks, in order:

1. the move is in BOOKING_TRANSITIONS,
2. the actor may drive a reservation into the target status,
3. payment has been captured before a reservation leaves PendingPayment,
4. fuel custody: Active needs a pickup reading, Completed a return reading.

The staff operations below wrap transition() in a single store transaction and
notify the customer after commit. A failed notification never undoes the
state change.
"""
import enum
from dataclasses import dataclass
from typing import List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db_operations import find_stale_holds, get_reservation, load_fee_configuration, write_transaction
from errors import BookingError, InvalidTransitionError, PermissionDeniedError, ValidationError
from models import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    PRE_ACTIVE_STATUSES,
    Reservation,
    utc_now,
)
from pricing import FeeConfiguration
from settlement import (
    FuelPhase,
    FuelSettlement,
    calculate_fuel_settlement,
    can_record_pickup,
    can_record_return,
    validate_fuel_level,
)

logger = logging.getLogger(__name__)


class Actor(str, enum.Enum):
    SYSTEM = "system"  # payment gateway callbacks, hold expiry
    ADMIN = "admin"
    OWNER = "owner"  # holder of the reservation's guest token
    ANONYMOUS = "anonymous"


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING_PAYMENT: {
        BookingStatus.CONFIRMED,
        BookingStatus.ACTIVE,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    },
    BookingStatus.PENDING_VERIFICATION: {
        BookingStatus.CONFIRMED,
        BookingStatus.ACTIVE,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.ACTIVE,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    },
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    # A payment that completes after its hold lapsed revives the booking
    BookingStatus.EXPIRED: {BookingStatus.CONFIRMED},
}

TRANSITION_ACTORS = {
    BookingStatus.CONFIRMED: {Actor.SYSTEM, Actor.ADMIN},
    BookingStatus.ACTIVE: {Actor.ADMIN},
    BookingStatus.COMPLETED: {Actor.ADMIN},
    BookingStatus.CANCELLED: {Actor.ADMIN, Actor.OWNER},
    BookingStatus.EXPIRED: {Actor.SYSTEM, Actor.ADMIN},
}

# Leaving these statuses for an occupying status requires money in hand
PAYMENT_GATED_STATUSES = (BookingStatus.PENDING_PAYMENT, BookingStatus.EXPIRED)


@dataclass(frozen=True)
class StatusTransition:
    reservation_id: Optional[int]
    from_status: BookingStatus
    to_status: BookingStatus


@dataclass(frozen=True)
class FuelReadingResult:
    reservation: Reservation
    phase: FuelPhase
    level: float
    transition: Optional[StatusTransition]
    settlement: FuelSettlement


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, set())


def transition(reservation: Reservation, target: BookingStatus, actor: Actor) -> StatusTransition:
    """Move the reservation to target, or raise without touching it."""
    current = reservation.booking_status
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move reservation from {current.value} to {target.value}")
    if actor not in TRANSITION_ACTORS[target]:
        raise PermissionDeniedError(f"{actor.value} may not move a reservation to {target.value}")
    if current == BookingStatus.EXPIRED and actor != Actor.SYSTEM:
        raise PermissionDeniedError("Only a payment confirmation can revive an expired reservation")
    if (
        current in PAYMENT_GATED_STATUSES
        and target in (BookingStatus.CONFIRMED, BookingStatus.ACTIVE)
        and not reservation.payment_captured
    ):
        raise InvalidTransitionError(
            f"Payment is {reservation.payment_status.value}; it must be paid or partial before leaving {current.value}"
        )
    if target == BookingStatus.ACTIVE and reservation.pickup_fuel_level is None:
        raise InvalidTransitionError("A pickup fuel reading is required before the rental becomes active")
    if target == BookingStatus.COMPLETED and reservation.return_fuel_level is None:
        raise InvalidTransitionError("A return fuel reading is required before the rental is completed")

    reservation.booking_status = target
    logger.info(f"[TRANSITION] Reservation {reservation.id}: {current.value} -> {target.value} ({actor.value})")
    return StatusTransition(reservation.id, current, target)


def require_actor(actor: Actor, *allowed: Actor):
    if actor not in allowed:
        raise PermissionDeniedError(f"{actor.value} may not perform this operation")


def _require_owner(reservation: Reservation, actor: Actor, guest_token: Optional[str]):
    if actor == Actor.OWNER and (not guest_token or guest_token != reservation.guest_token):
        raise PermissionDeniedError("Guest token does not match this reservation")


def apply_fuel_reading(
    reservation: Reservation,
    phase: FuelPhase,
    level,
    config: FeeConfiguration,
) -> FuelReadingResult:
    """
    Record a reading and derive the status change it implies, as one step.

    The first pickup reading activates a committed reservation; the first
    return reading completes an active one. Later corrections only update
    the reading and the charge.
    """
    level = validate_fuel_level(level)
    status_change = None

    if phase == FuelPhase.PICKUP:
        if not can_record_pickup(reservation.booking_status):
            raise InvalidTransitionError(
                f"Pickup fuel cannot be recorded while the reservation is {reservation.booking_status.value}"
            )
        previous = reservation.pickup_fuel_level
        reservation.pickup_fuel_level = level
        if previous is None and reservation.booking_status in PRE_ACTIVE_STATUSES:
            try:
                status_change = transition(reservation, BookingStatus.ACTIVE, Actor.ADMIN)
            except BookingError:
                # The reading and the activation are one step
                reservation.pickup_fuel_level = previous
                raise
    elif phase == FuelPhase.RETURN:
        if reservation.pickup_fuel_level is None:
            raise InvalidTransitionError("Pickup fuel level must be set first")
        if not can_record_return(reservation.booking_status, reservation.pickup_fuel_level):
            raise InvalidTransitionError(
                f"Return fuel cannot be recorded while the reservation is {reservation.booking_status.value}"
            )
        first_reading = reservation.return_fuel_level is None
        reservation.return_fuel_level = level
        if first_reading and reservation.booking_status == BookingStatus.ACTIVE:
            status_change = transition(reservation, BookingStatus.COMPLETED, Actor.ADMIN)
    else:
        raise ValidationError(f"Unknown fuel phase: {phase!r}")

    settlement = calculate_fuel_settlement(reservation.pickup_fuel_level, reservation.return_fuel_level, config)
    reservation.fuel_charge = settlement.charge
    return FuelReadingResult(reservation, phase, level, status_change, settlement)


async def record_fuel_reading(
    session: AsyncSession,
    reservation_id: int,
    phase: FuelPhase,
    level,
    actor: Actor = Actor.ADMIN,
    config: Optional[FeeConfiguration] = None,
) -> FuelReadingResult:
    """Store a pickup or return fuel reading together with any status change it triggers."""
    require_actor(actor, Actor.ADMIN)
    phase = FuelPhase(phase)
    validate_fuel_level(level)

    async with write_transaction(session):
        reservation = await get_reservation(session, reservation_id, for_update=True)
        config = config or await load_fee_configuration(session)
        result = apply_fuel_reading(reservation, phase, level, config)

    logger.info(
        f"[FUEL] Reservation {reservation_id} | {phase.value}: {result.level:.0f}% | "
        f"Charge: EUR{result.settlement.charge:.2f}"
    )
    if result.settlement.status == "shortfall":
        logger.warning(
            f"⚠️  Reservation {reservation_id} returned with {result.settlement.shortfall:.1f}% less fuel "
            f"- charge EUR{result.settlement.charge:.2f}"
        )
    return result


def confirm_payment(reservation: Reservation, payment_id: Optional[str]) -> StatusTransition:
    """Gateway reports the checkout as paid: full payment for card, deposit for cash."""
    now = utc_now()
    if reservation.payment_method == PaymentMethod.CASH:
        reservation.payment_status = PaymentStatus.PARTIAL
        reservation.deposit_paid_at = now
    else:
        reservation.payment_status = PaymentStatus.PAID
    reservation.paid_at = now
    reservation.gateway_payment_id = payment_id
    return transition(reservation, BookingStatus.CONFIRMED, Actor.SYSTEM)


def fail_payment(reservation: Reservation):
    """The charge failed. Booking stays PendingPayment; the customer must restart checkout."""
    if reservation.payment_captured:
        raise InvalidTransitionError("Payment already captured")
    reservation.payment_status = PaymentStatus.FAILED
    logger.info(f"[PAYMENT] Reservation {reservation.id}: payment failed, vehicle released")


async def approve_reservation(
    session: AsyncSession,
    reservation_id: int,
    actor: Actor,
    notifier=None,
) -> StatusTransition:
    require_actor(actor, Actor.ADMIN)
    async with write_transaction(session):
        reservation = await get_reservation(session, reservation_id, for_update=True)
        status_change = transition(reservation, BookingStatus.CONFIRMED, actor)

    if notifier is not None:
        await notifier.send("booking_confirmed", reservation)
    return status_change


async def _cancel(
    session: AsyncSession,
    reservation_id: int,
    actor: Actor,
    gateway,
    notifier,
    guest_token: Optional[str] = None,
) -> StatusTransition:
    async with write_transaction(session):
        reservation = await get_reservation(session, reservation_id, for_update=True)
        _require_owner(reservation, actor, guest_token)
        status_change = transition(reservation, BookingStatus.CANCELLED, actor)

        # Refund before the cancellation commits; a failed refund leaves the booking untouched
        if reservation.payment_captured and reservation.gateway_payment_id:
            if gateway is None:
                raise ValidationError("A payment gateway is required to refund this reservation")
            await gateway.refund_payment(reservation.gateway_payment_id)
            reservation.refunded_at = utc_now()
            logger.info(f"[REFUND] Reservation {reservation_id}: payment {reservation.gateway_payment_id} refunded")

    if notifier is not None:
        await notifier.send("booking_cancelled", reservation)
    return status_change


async def reject_reservation(
    session: AsyncSession,
    reservation_id: int,
    actor: Actor,
    gateway=None,
    notifier=None,
) -> StatusTransition:
    """Staff rejection. Refunds any captured payment."""
    require_actor(actor, Actor.ADMIN)
    return await _cancel(session, reservation_id, actor, gateway, notifier)


async def cancel_reservation(
    session: AsyncSession,
    reservation_id: int,
    actor: Actor,
    guest_token: Optional[str] = None,
    gateway=None,
    notifier=None,
) -> StatusTransition:
    """Customer (guest token) or staff cancellation. Refunds any captured payment."""
    require_actor(actor, Actor.ADMIN, Actor.OWNER)
    return await _cancel(session, reservation_id, actor, gateway, notifier, guest_token=guest_token)


def expire_reservation(reservation: Reservation, actor: Actor = Actor.SYSTEM) -> StatusTransition:
    return transition(reservation, BookingStatus.EXPIRED, actor)


async def sweep_stale_holds(session: AsyncSession, now=None) -> List[StatusTransition]:
    """Expire abandoned checkouts inside the caller's transaction. Does not commit."""
    expired = []
    for reservation in await find_stale_holds(session, now):
        expired.append(expire_reservation(reservation))
    if expired:
        await session.flush()
        logger.info(f"Released {len(expired)} stale checkout hold(s)")
    return expired


async def settle_remaining_payment(session: AsyncSession, reservation_id: int, actor: Actor) -> Reservation:
    """Cash remainder of a deposit booking collected at the counter."""
    require_actor(actor, Actor.ADMIN)
    async with write_transaction(session):
        reservation = await get_reservation(session, reservation_id, for_update=True)
        if reservation.payment_status != PaymentStatus.PARTIAL:
            raise InvalidTransitionError(
                f"Only a partially paid reservation can be settled (payment is {reservation.payment_status.value})"
            )
        if reservation.booking_status in (BookingStatus.CANCELLED, BookingStatus.EXPIRED):
            raise InvalidTransitionError(f"Reservation is {reservation.booking_status.value}")
        reservation.payment_status = PaymentStatus.PAID
        reservation.remaining_amount = 0.0
        reservation.paid_at = utc_now()

    logger.info(f"[PAYMENT] Reservation {reservation_id}: remaining amount settled in cash")
    return reservation


async def delete_reservation(
    session: AsyncSession,
    reservation_id: int,
    actor: Actor,
    force: bool = False,
) -> dict:
    """
    Remove a reservation permanently.

    Without a captured payment this is routine. With one it is an explicit
    override (force=True) and is logged at WARNING: the charge is NOT refunded
    by deleting the row.
    """
    require_actor(actor, Actor.ADMIN)
    async with write_transaction(session):
        reservation = await get_reservation(session, reservation_id, for_update=True)
        captured = reservation.payment_captured
        if captured and not force:
            raise InvalidTransitionError(
                "Reservation has a captured payment; cancel it instead or delete with force"
            )
        summary = {
            "id": reservation.id,
            "vehicle_id": reservation.vehicle_id,
            "booking_status": reservation.booking_status.value,
            "payment_status": reservation.payment_status.value,
            "total_price": reservation.total_price,
            "gateway_payment_id": reservation.gateway_payment_id,
        }
        await session.delete(reservation)

    if captured:
        logger.warning(
            f"[DELETE] Reservation {reservation_id} deleted with captured payment "
            f"{summary['gateway_payment_id']} ({summary['payment_status']}, EUR{summary['total_price']:.2f}) "
            f"- no refund issued"
        )
    else:
        logger.info(f"[DELETE] Reservation {reservation_id} | Status: {summary['booking_status']}")
    return summary
