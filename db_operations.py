"""
Database operations for vehicles, reservations, blocks and settings.

Nothing in here commits - callers own the transaction (see write_transaction).
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConflictError, NotFoundError
from intervals import overlap_clause
from models import (
    BookingStatus,
    FAILED_PAYMENT_KEYS,
    HOLDING_STATUS_KEYS,
    PENDING_PAYMENT_KEYS,
    Reservation,
    Setting,
    Vehicle,
    VehicleBlock,
    UNPAID_PAYMENT_KEYS,
    VehicleStatus,
    status_key,
    utc_now,
)
from pricing import FeeConfiguration

logger = logging.getLogger(__name__)


def conflict_from_integrity_error(exc: IntegrityError) -> Optional[ConflictError]:
    """Translate an exclusion-guard violation into a ConflictError, or None for other integrity errors."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    if "reservation_overlap" in message or "ex_reservations_vehicle_interval" in message:
        return ConflictError("Someone else just booked this vehicle for the selected dates", kind="booking")
    if "block_overlap" in message or "ex_vehicle_blocks_vehicle_interval" in message:
        return ConflictError("Vehicle is blocked for the selected dates", kind="block")
    return None


@asynccontextmanager
async def write_transaction(session: AsyncSession):
    """
    Run a block of store operations as one unit: commit on success, roll back on any error.
    Exclusion-guard violations surface as ConflictError.
    """
    try:
        yield session
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        conflict = conflict_from_integrity_error(e)
        if conflict is None:
            raise
        logger.warning(f"Exclusion guard rejected write: {conflict.message}")
        raise conflict from e
    except Exception:
        await session.rollback()
        raise


async def get_vehicle(session: AsyncSession, vehicle_id: int) -> Vehicle:
    vehicle = await session.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFoundError(f"Vehicle {vehicle_id} not found")
    return vehicle


async def lock_vehicle(session: AsyncSession, vehicle_id: int) -> Vehicle:
    """
    Fetch a vehicle and lock its row for the rest of the transaction.
    Serializes all writes touching this vehicle on databases with row locks;
    SQLite already holds the database write lock from BEGIN IMMEDIATE.
    """
    result = await session.execute(
        select(Vehicle).where(Vehicle.id == vehicle_id).with_for_update()
    )
    vehicle = result.scalar_one_or_none()
    if vehicle is None:
        raise NotFoundError(f"Vehicle {vehicle_id} not found")
    return vehicle


async def list_vehicles(session: AsyncSession, include_maintenance: bool = False) -> List[Vehicle]:
    query = select(Vehicle).order_by(Vehicle.id)
    if not include_maintenance:
        query = query.where(Vehicle.status != VehicleStatus.MAINTENANCE)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_reservation(session: AsyncSession, reservation_id: int, for_update: bool = False) -> Reservation:
    query = select(Reservation).where(Reservation.id == reservation_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation


async def get_reservation_by_guest_token(session: AsyncSession, guest_token: str) -> Reservation:
    result = await session.execute(select(Reservation).where(Reservation.guest_token == guest_token))
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError("Reservation not found")
    return reservation


async def get_reservation_by_gateway_session(session: AsyncSession, gateway_session_id: str) -> Reservation:
    result = await session.execute(
        select(Reservation).where(Reservation.gateway_session_id == gateway_session_id).with_for_update()
    )
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError(f"No reservation for payment session {gateway_session_id}")
    return reservation


async def find_holding_reservations(
    session: AsyncSession,
    vehicle_id: int,
    start: datetime,
    end: datetime,
    exclude_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Reservation]:
    """
    Reservations for the vehicle that hold it during [start, end).

    Failed payments never hold the vehicle; PendingPayment rows stop holding it
    once their checkout hold has lapsed, even before the expiry sweep runs.
    Statuses are matched by spelling key so legacy-cased rows still count.
    """
    now = now or utc_now()
    query = (
        select(Reservation)
        .where(
            Reservation.vehicle_id == vehicle_id,
            status_key(Reservation.booking_status).in_(HOLDING_STATUS_KEYS),
            status_key(Reservation.payment_status).not_in(FAILED_PAYMENT_KEYS),
            overlap_clause(Reservation.pickup_date, Reservation.return_date, start, end),
        )
        .order_by(Reservation.pickup_date)
    )
    if exclude_id is not None:
        query = query.where(Reservation.id != exclude_id)
    result = await session.execute(query)
    return [r for r in result.scalars().all() if not hold_lapsed(r, now)]


def hold_lapsed(reservation: Reservation, now: datetime) -> bool:
    if reservation.booking_status != BookingStatus.PENDING_PAYMENT or reservation.hold_expires_at is None:
        return False
    if reservation.payment_captured:
        return False
    expires_at = reservation.hold_expires_at
    # SQLite hands back naive values; they were stored as UTC
    if expires_at.tzinfo is None:
        now = now.replace(tzinfo=None)
    return expires_at <= now


async def find_overlapping_blocks(
    session: AsyncSession,
    vehicle_id: int,
    start: datetime,
    end: datetime,
    exclude_id: Optional[int] = None,
) -> List[VehicleBlock]:
    query = (
        select(VehicleBlock)
        .where(
            VehicleBlock.vehicle_id == vehicle_id,
            overlap_clause(VehicleBlock.blocked_from, VehicleBlock.blocked_until, start, end),
        )
        .order_by(VehicleBlock.blocked_from)
    )
    if exclude_id is not None:
        query = query.where(VehicleBlock.id != exclude_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def find_stale_holds(session: AsyncSession, now: Optional[datetime] = None) -> List[Reservation]:
    """PendingPayment reservations whose checkout window has lapsed without a captured payment."""
    now = now or utc_now()
    result = await session.execute(
        select(Reservation).where(
            status_key(Reservation.booking_status).in_(PENDING_PAYMENT_KEYS),
            status_key(Reservation.payment_status).in_(UNPAID_PAYMENT_KEYS),
            Reservation.hold_expires_at.is_not(None),
            Reservation.hold_expires_at <= now,
        )
    )
    return list(result.scalars().all())


async def get_block(session: AsyncSession, block_id: int) -> VehicleBlock:
    block = await session.get(VehicleBlock, block_id)
    if block is None:
        raise NotFoundError(f"Vehicle block {block_id} not found")
    return block


async def list_blocks(session: AsyncSession, vehicle_id: Optional[int] = None) -> List[VehicleBlock]:
    query = select(VehicleBlock).order_by(VehicleBlock.blocked_from)
    if vehicle_id is not None:
        query = query.where(VehicleBlock.vehicle_id == vehicle_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def load_settings(session: AsyncSession) -> Dict[str, dict]:
    result = await session.execute(select(Setting))
    return {setting.key: setting.value for setting in result.scalars().all()}


async def save_settings(session: AsyncSession, updates: Dict[str, dict]):
    for key, value in updates.items():
        existing = await session.get(Setting, key)
        if existing:
            logger.info(f"[UPDATE] Setting: {key} | Value: {value}")
            existing.value = value
        else:
            logger.info(f"[INSERT] Setting: {key} | Value: {value}")
            session.add(Setting(key=key, value=value))


async def load_fee_configuration(session: AsyncSession) -> FeeConfiguration:
    """Read the fee configuration currently in effect. Never cached."""
    return FeeConfiguration.from_settings(await load_settings(session))
