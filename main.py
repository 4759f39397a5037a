from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from config import LOG_DATE_FORMAT, LOG_FORMAT, LOG_LEVEL
from database import close_db, get_session, init_db
from lifecycle import Actor
from routes import (
    approve_reservation_route,
    cancel_guest_reservation_route,
    create_block_route,
    create_manual_reservation_route,
    create_reservation_route,
    delete_block_route,
    delete_reservation_route,
    expire_holds_route,
    get_fee_configuration_route,
    get_guest_reservation_route,
    get_notifier,
    get_payment_gateway,
    get_reservation_route,
    list_blocks_route,
    list_vehicles_route,
    payment_webhook_route,
    quote_route,
    record_fuel_route,
    reject_reservation_route,
    require_admin,
    settle_remaining_route,
    update_block_route,
    update_fee_configuration_route,
    vehicle_availability_route,
)
from schemas import (
    BlockIn,
    BlockUpdate,
    FeeConfigurationIn,
    FuelReadingIn,
    ManualReservationCreate,
    QuoteRequest,
    ReservationCreate,
)

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
    except Exception as e:
        logger.warning(f"⚠️  Database initialization failed: {str(e)}")
        logger.warning("⚠️  Continuing without a verified schema - write endpoints may fail")
    yield
    await close_db()


app = FastAPI(
    title="Rental Booking API",
    description="Vehicle availability, pricing, reservation lifecycle and fuel settlement",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    return {"message": "Rental Booking API - Availability & Settlement Engine"}


@app.get("/vehicles")
async def list_vehicles(
    pickup_date: Optional[str] = Query(None, description="Pickup date or date-time (ISO 8601)"),
    return_date: Optional[str] = Query(None, description="Return date or date-time (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
):
    """
    All bookable vehicles with availability for the selected window.
    Without dates, availability is evaluated for right now.
    """
    return await list_vehicles_route(session, pickup_date, return_date)


@app.get("/vehicles/{vehicle_id}/availability")
async def vehicle_availability(
    vehicle_id: int,
    pickup_date: Optional[str] = Query(None, description="Pickup date or date-time (ISO 8601)"),
    return_date: Optional[str] = Query(None, description="Return date or date-time (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
):
    return await vehicle_availability_route(session, vehicle_id, pickup_date, return_date)


@app.post("/quotes")
async def quote(body: QuoteRequest, session: AsyncSession = Depends(get_session)):
    return await quote_route(session, body)


@app.post("/reservations", status_code=201)
async def create_reservation(
    body: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    gateway=Depends(get_payment_gateway),
):
    return await create_reservation_route(session, body, gateway)


@app.get("/reservations/guest/{guest_token}")
async def get_guest_reservation(guest_token: str, session: AsyncSession = Depends(get_session)):
    return await get_guest_reservation_route(session, guest_token)


@app.post("/reservations/guest/{guest_token}/cancel")
async def cancel_guest_reservation(
    guest_token: str,
    session: AsyncSession = Depends(get_session),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_notifier),
):
    return await cancel_guest_reservation_route(session, guest_token, gateway, notifier)


@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_notifier),
):
    return await payment_webhook_route(request, session, gateway, notifier)


# Staff endpoints

@app.post("/admin/reservations", status_code=201)
async def create_manual_reservation(
    body: ManualReservationCreate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await create_manual_reservation_route(session, body, actor)


@app.get("/admin/reservations/{reservation_id}")
async def get_reservation(
    reservation_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await get_reservation_route(session, reservation_id)


@app.post("/admin/reservations/{reservation_id}/approve")
async def approve_reservation(
    reservation_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
    notifier=Depends(get_notifier),
):
    return await approve_reservation_route(session, reservation_id, actor, notifier)


@app.post("/admin/reservations/{reservation_id}/reject")
async def reject_reservation(
    reservation_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_notifier),
):
    return await reject_reservation_route(session, reservation_id, actor, gateway, notifier)


@app.post("/admin/reservations/{reservation_id}/fuel")
async def record_fuel(
    reservation_id: int,
    body: FuelReadingIn,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    """Record a pickup or return fuel reading (percent of a full tank)."""
    return await record_fuel_route(session, reservation_id, body, actor)


@app.post("/admin/reservations/{reservation_id}/settle-remaining")
async def settle_remaining(
    reservation_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await settle_remaining_route(session, reservation_id, actor)


@app.delete("/admin/reservations/{reservation_id}")
async def delete_reservation(
    reservation_id: int,
    force: bool = Query(False, description="Delete even though a payment was captured"),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await delete_reservation_route(session, reservation_id, actor, force)


@app.get("/admin/blocks")
async def list_blocks(
    vehicle_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await list_blocks_route(session, vehicle_id)


@app.post("/admin/blocks", status_code=201)
async def create_block(
    body: BlockIn,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await create_block_route(session, body, actor)


@app.patch("/admin/blocks/{block_id}")
async def update_block(
    block_id: int,
    body: BlockUpdate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await update_block_route(session, block_id, body)


@app.delete("/admin/blocks/{block_id}")
async def delete_block(
    block_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await delete_block_route(session, block_id)


@app.get("/admin/fee-configuration")
async def get_fee_configuration(
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await get_fee_configuration_route(session)


@app.put("/admin/fee-configuration")
async def update_fee_configuration(
    body: FeeConfigurationIn,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    return await update_fee_configuration_route(session, body, actor)


@app.post("/admin/holds/expire")
async def expire_holds(
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    """Release abandoned checkout holds. Safe to call from a scheduler."""
    return await expire_holds_route(session)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
