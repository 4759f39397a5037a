"""
Vehicle blocks: staff-entered periods when a vehicle cannot be booked online
(phone reservations, maintenance windows, ...).
"""
from typing import List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from availability import ensure_available, normalize_interval
from db_operations import get_block, list_blocks as query_blocks, lock_vehicle, write_transaction
from errors import ValidationError
from lifecycle import sweep_stale_holds
from models import VehicleBlock, local_now

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASON = "Phone reservation"


def _validate_interval(blocked_from, blocked_until):
    if blocked_from is None or blocked_until is None:
        raise ValidationError("Both start and end of the block are required")
    start, end = normalize_interval(blocked_from, blocked_until)
    if end <= local_now():
        raise ValidationError("Cannot block a period that has already ended")
    return start, end


async def create_block(
    session: AsyncSession,
    vehicle_id: int,
    blocked_from,
    blocked_until,
    reason: Optional[str] = None,
    contact_note: Optional[str] = None,
    created_by: Optional[str] = None,
) -> VehicleBlock:
    """
    Block a vehicle for [blocked_from, blocked_until).

    Fails with ConflictError (kind "booking" or "block") if the period overlaps
    a holding reservation or another block of the same vehicle.
    """
    start, end = _validate_interval(blocked_from, blocked_until)

    async with write_transaction(session):
        await sweep_stale_holds(session)
        await lock_vehicle(session, vehicle_id)
        await ensure_available(session, vehicle_id, start, end)

        block = VehicleBlock(
            vehicle_id=vehicle_id,
            blocked_from=start,
            blocked_until=end,
            reason=(reason or "").strip() or DEFAULT_BLOCK_REASON,
            contact_note=contact_note,
            created_by=created_by,
        )
        session.add(block)
        await session.flush()
        logger.info(f"[INSERT] VehicleBlock ID: {block.id} | Vehicle: {vehicle_id} | {start} - {end} | {block.reason}")

    return block


async def update_block(
    session: AsyncSession,
    block_id: int,
    blocked_from=None,
    blocked_until=None,
    reason: Optional[str] = None,
    contact_note: Optional[str] = None,
) -> VehicleBlock:
    """Move or relabel a block. The block itself is ignored when re-checking availability."""
    async with write_transaction(session):
        block = await get_block(session, block_id)
        start, end = block.blocked_from, block.blocked_until
        if blocked_from is not None or blocked_until is not None:
            start, end = _validate_interval(
                blocked_from if blocked_from is not None else start,
                blocked_until if blocked_until is not None else end,
            )
            await sweep_stale_holds(session)
            await lock_vehicle(session, block.vehicle_id)
            await ensure_available(session, block.vehicle_id, start, end, exclude_block_id=block.id)
            block.blocked_from = start
            block.blocked_until = end

        if reason is not None:
            block.reason = reason.strip() or DEFAULT_BLOCK_REASON
        if contact_note is not None:
            block.contact_note = contact_note
        logger.info(f"[UPDATE] VehicleBlock ID: {block.id} | {start} - {end} | {block.reason}")

    return block


async def delete_block(session: AsyncSession, block_id: int):
    async with write_transaction(session):
        block = await get_block(session, block_id)
        await session.delete(block)
    logger.info(f"[DELETE] VehicleBlock ID: {block_id}")


async def list_blocks(session: AsyncSession, vehicle_id: Optional[int] = None) -> List[VehicleBlock]:
    return await query_blocks(session, vehicle_id)
