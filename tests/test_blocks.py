from datetime import timedelta

import pytest

from availability import check_availability
from blocks import create_block, delete_block, list_blocks, update_block
from conftest import day_at
from db_operations import get_reservation
from errors import ConflictError, NotFoundError, ValidationError
from models import BookingStatus, PaymentStatus, utc_now


async def test_block_over_active_rental_is_rejected(session, vehicle, make_reservation):
    """
    Given an Active reservation, staff trying to block an overlapping period
    get a booking conflict and no block is created.
    """
    await make_reservation(
        vehicle, day_at(-1), day_at(3), booking_status=BookingStatus.ACTIVE, pickup_fuel_level=80
    )

    with pytest.raises(ConflictError) as excinfo:
        await create_block(session, vehicle.id, day_at(1), day_at(2), reason="Phone reservation")

    assert excinfo.value.kind == "booking"
    assert await list_blocks(session, vehicle.id) == []


async def test_overlapping_blocks_are_rejected(session, vehicle):
    await create_block(session, vehicle.id, day_at(1), day_at(3))

    with pytest.raises(ConflictError) as excinfo:
        await create_block(session, vehicle.id, day_at(2), day_at(5))

    assert excinfo.value.kind == "block"


async def test_block_makes_vehicle_unavailable_with_its_reason(session, vehicle):
    block = await create_block(
        session, vehicle.id, day_at(1), day_at(3), reason="Winter tyres", contact_note="Garage Huber"
    )

    result = await check_availability(session, vehicle.id, day_at(2), day_at(4))

    assert block.id is not None
    assert not result.is_available
    assert result.conflict_type == "block"
    assert result.reason == "Winter tyres"


async def test_default_reason_is_phone_reservation(session, vehicle):
    block = await create_block(session, vehicle.id, day_at(1), day_at(2), reason="  ")
    assert block.reason == "Phone reservation"


async def test_block_must_not_end_in_the_past(session, vehicle):
    with pytest.raises(ValidationError):
        await create_block(session, vehicle.id, day_at(-5), day_at(-3))


async def test_block_end_must_follow_start(session, vehicle):
    with pytest.raises(ValidationError):
        await create_block(session, vehicle.id, day_at(3), day_at(1))


async def test_block_can_be_extended_over_its_own_period(session, vehicle):
    block = await create_block(session, vehicle.id, day_at(1), day_at(3))

    updated = await update_block(session, block.id, blocked_until=day_at(5))

    assert updated.blocked_until == day_at(5)


async def test_block_cannot_be_moved_onto_a_booking(session, vehicle, make_reservation):
    await make_reservation(vehicle, day_at(6), day_at(8))
    block = await create_block(session, vehicle.id, day_at(1), day_at(3))

    with pytest.raises(ConflictError):
        await update_block(session, block.id, blocked_from=day_at(5), blocked_until=day_at(7))


async def test_deleting_a_block_frees_the_vehicle(session, vehicle):
    block = await create_block(session, vehicle.id, day_at(1), day_at(3))

    await delete_block(session, block.id)

    assert (await check_availability(session, vehicle.id, day_at(1), day_at(3))).is_available
    with pytest.raises(NotFoundError):
        await delete_block(session, block.id)


async def test_lapsed_checkout_hold_does_not_prevent_a_block(session, vehicle, make_reservation):
    abandoned = await make_reservation(
        vehicle,
        day_at(1),
        day_at(3),
        booking_status=BookingStatus.PENDING_PAYMENT,
        payment_status=PaymentStatus.PENDING,
        hold_expires_at=utc_now() - timedelta(minutes=5),
    )

    await create_block(session, vehicle.id, day_at(1), day_at(2))

    assert (await get_reservation(session, abandoned.id)).booking_status == BookingStatus.EXPIRED
