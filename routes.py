"""
API routes/endpoints for the application.
"""
from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional
import hmac
import json
import logging

import config
from api_client import NotificationSender, PaymentGatewayClient, verify_webhook_signature
from availability import check_listing_availability, list_vehicles_with_availability
from blocks import create_block, delete_block, list_blocks, update_block
from bookings import (
    BookingRequest,
    create_manual_reservation,
    create_reservation,
    expire_stale_holds,
    get_reservation_for_guest,
    handle_payment_event,
    quote_reservation,
    update_fee_configuration,
)
from db_operations import get_reservation, get_vehicle, load_fee_configuration
from errors import BookingError, ConflictError
from lifecycle import (
    Actor,
    approve_reservation,
    cancel_reservation,
    delete_reservation,
    record_fuel_reading,
    reject_reservation,
    settle_remaining_payment,
)
from schemas import (
    AvailabilityOut,
    BlockIn,
    BlockOut,
    BlockUpdate,
    CheckoutOut,
    FeeConfigurationIn,
    FeeConfigurationOut,
    FuelReadingIn,
    FuelReadingOut,
    ManualReservationCreate,
    PriceBreakdownOut,
    QuoteOut,
    QuoteRequest,
    ReservationCreate,
    ReservationOut,
    VehicleListingOut,
)
from settlement import FuelPhase

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"


def get_payment_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_notifier() -> NotificationSender:
    return NotificationSender()


def require_admin(x_admin_token: Optional[str] = Header(None)) -> Actor:
    """Staff endpoints: the X-Admin-Token header must match ADMIN_API_TOKEN."""
    expected = config.ADMIN_API_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(expected, x_admin_token):
        raise HTTPException(status_code=403, detail="Admin token required")
    return Actor.ADMIN


def _http_error(e: BookingError) -> HTTPException:
    detail = {"error": type(e).__name__, "message": e.message}
    if isinstance(e, ConflictError):
        detail["conflict_type"] = e.kind
    if e.status_code >= 500:
        logger.error(f"{type(e).__name__}: {e.message}")
    return HTTPException(status_code=e.status_code, detail=detail)


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error in {action}: {str(e)}")
    return HTTPException(status_code=500, detail=f"Internal error: {str(e)}")


def _booking_request(body: QuoteRequest) -> BookingRequest:
    return BookingRequest(
        vehicle_id=body.vehicle_id,
        pickup=body.pickup,
        return_date=body.return_at,
        pickup_location=body.pickup_location.name,
        pickup_address=body.pickup_location.address,
        return_location=body.return_location.name,
        return_address=body.return_location.address,
        unlimited_km=body.unlimited_km,
        payment_method=body.payment_method,
        customer_name=getattr(body, "customer_name", ""),
        customer_email=getattr(body, "customer_email", ""),
        customer_phone=getattr(body, "customer_phone", None),
        customer_age=getattr(body, "customer_age", None),
        notes=getattr(body, "notes", None),
        contract_number=getattr(body, "contract_number", None),
        expected_total=getattr(body, "expected_total", None),
    )


def _price_out(breakdown) -> dict:
    return PriceBreakdownOut(**breakdown.as_dict()).model_dump(mode="json")


def _reservation_out(reservation) -> dict:
    return ReservationOut.model_validate(reservation).model_dump(mode="json")


def _block_out(block) -> dict:
    return BlockOut.model_validate(block).model_dump(mode="json")


def _success(data, **extra) -> JSONResponse:
    return JSONResponse(content={"success": True, **extra, "data": data})


async def list_vehicles_route(session, pickup_date: Optional[str] = None, return_date: Optional[str] = None):
    """
    Storefront listing: every bookable vehicle with its availability.

    Without dates the vehicles are checked for right now. A vehicle whose
    availability cannot be determined is shown as available with a warning.
    """
    try:
        listing = await list_vehicles_with_availability(session, pickup_date, return_date)
        data = [
            VehicleListingOut(
                id=vehicle.id,
                brand=vehicle.brand,
                model=vehicle.model,
                price_per_day=vehicle.price_per_day,
                minimum_age=vehicle.minimum_age,
                is_available=result.is_available,
                reason=result.reason,
                warning=result.warning,
            ).model_dump(mode="json")
            for vehicle, result in listing
        ]
        return _success(data, total=len(data))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("list_vehicles", e)


async def vehicle_availability_route(
    session,
    vehicle_id: int,
    pickup_date: Optional[str] = None,
    return_date: Optional[str] = None,
):
    try:
        await get_vehicle(session, vehicle_id)
        result = await check_listing_availability(session, vehicle_id, pickup_date, return_date)
        return _success(
            AvailabilityOut(
                vehicle_id=vehicle_id,
                is_available=result.is_available,
                reason=result.reason,
                conflict_type=result.conflict_type,
                warning=result.warning,
            ).model_dump(mode="json")
        )
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("vehicle_availability", e)


async def quote_route(session, body: QuoteRequest):
    """Price breakdown and availability for a prospective booking. Nothing is stored."""
    try:
        quote = await quote_reservation(session, _booking_request(body))
        data = QuoteOut(
            vehicle_id=quote.vehicle.id,
            pickup_date=quote.pickup,
            return_date=quote.return_date,
            pickup_location=quote.pickup_location.name,
            return_location=quote.return_location.name,
            price=_price_out(quote.breakdown),
            availability=AvailabilityOut(
                vehicle_id=quote.vehicle.id,
                is_available=quote.availability.is_available,
                reason=quote.availability.reason,
                conflict_type=quote.availability.conflict_type,
            ),
        )
        return _success(data.model_dump(mode="json"))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("quote", e)


async def create_reservation_route(session, body: ReservationCreate, gateway):
    """
    Online booking. Holds the vehicle as PendingPayment and returns the
    checkout URL the customer is redirected to.
    """
    try:
        logger.info(
            f"Reservation request - vehicle: {body.vehicle_id}, "
            f"{body.pickup} -> {body.return_at}, method: {body.payment_method.value}"
        )
        result = await create_reservation(
            session,
            _booking_request(body),
            gateway,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
        data = CheckoutOut(
            reservation_id=result.reservation.id,
            guest_token=result.reservation.guest_token,
            checkout_url=result.checkout_url,
            price=_price_out(result.breakdown),
        )
        return JSONResponse(status_code=201, content={"success": True, "data": data.model_dump(mode="json")})
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("create_reservation", e)


async def get_guest_reservation_route(session, guest_token: str):
    try:
        reservation = await get_reservation_for_guest(session, guest_token)
        return _success(_reservation_out(reservation))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("get_guest_reservation", e)


async def cancel_guest_reservation_route(session, guest_token: str, gateway, notifier):
    try:
        reservation = await get_reservation_for_guest(session, guest_token)
        await cancel_reservation(
            session,
            reservation.id,
            Actor.OWNER,
            guest_token=guest_token,
            gateway=gateway,
            notifier=notifier,
        )
        return _success(_reservation_out(reservation))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("cancel_guest_reservation", e)


async def payment_webhook_route(request: Request, session, gateway, notifier):
    """
    Gateway callback. The signature is checked over the raw body before
    anything is parsed.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_webhook_signature(payload, signature, config.PAYMENT_WEBHOOK_SECRET):
        logger.warning("⚠️  Rejected payment webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event payload")

    try:
        result = await handle_payment_event(session, event, gateway=gateway, notifier=notifier)
        return _success({"outcome": result.outcome, "reservation_id": result.reservation_id, **result.details})
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("payment_webhook", e)


async def get_reservation_route(session, reservation_id: int):
    try:
        reservation = await get_reservation(session, reservation_id)
        return _success(_reservation_out(reservation))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("get_reservation", e)


async def create_manual_reservation_route(session, body: ManualReservationCreate, actor: Actor):
    try:
        reservation = await create_manual_reservation(
            session, _booking_request(body), actor, created_by=body.created_by
        )
        return JSONResponse(status_code=201, content={"success": True, "data": _reservation_out(reservation)})
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("create_manual_reservation", e)


async def approve_reservation_route(session, reservation_id: int, actor: Actor, notifier):
    try:
        await approve_reservation(session, reservation_id, actor, notifier=notifier)
        return _success(_reservation_out(await get_reservation(session, reservation_id)))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("approve_reservation", e)


async def reject_reservation_route(session, reservation_id: int, actor: Actor, gateway, notifier):
    try:
        await reject_reservation(session, reservation_id, actor, gateway=gateway, notifier=notifier)
        return _success(_reservation_out(await get_reservation(session, reservation_id)))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("reject_reservation", e)


async def record_fuel_route(session, reservation_id: int, body: FuelReadingIn, actor: Actor):
    try:
        result = await record_fuel_reading(session, reservation_id, FuelPhase(body.phase), body.level, actor)
        data = FuelReadingOut(
            reservation_id=reservation_id,
            phase=result.phase.value,
            level=result.level,
            booking_status=result.reservation.booking_status,
            transition=result.transition.to_status.value if result.transition else None,
            settlement_status=result.settlement.status,
            fuel_charge=result.settlement.charge,
        )
        return _success(data.model_dump(mode="json"))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("record_fuel", e)


async def settle_remaining_route(session, reservation_id: int, actor: Actor):
    try:
        reservation = await settle_remaining_payment(session, reservation_id, actor)
        return _success(_reservation_out(reservation))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("settle_remaining", e)


async def delete_reservation_route(session, reservation_id: int, actor: Actor, force: bool = False):
    try:
        summary = await delete_reservation(session, reservation_id, actor, force=force)
        return _success(summary, message=f"Reservation {reservation_id} deleted")
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("delete_reservation", e)


async def list_blocks_route(session, vehicle_id: Optional[int] = None):
    try:
        blocks = await list_blocks(session, vehicle_id)
        return _success([_block_out(block) for block in blocks], total=len(blocks))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("list_blocks", e)


async def create_block_route(session, body: BlockIn, actor: Actor):
    try:
        block = await create_block(
            session,
            body.vehicle_id,
            body.blocked_from,
            body.blocked_until,
            reason=body.reason,
            contact_note=body.contact_note,
            created_by=actor.value,
        )
        return JSONResponse(status_code=201, content={"success": True, "data": _block_out(block)})
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("create_block", e)


async def update_block_route(session, block_id: int, body: BlockUpdate):
    try:
        block = await update_block(
            session,
            block_id,
            blocked_from=body.blocked_from,
            blocked_until=body.blocked_until,
            reason=body.reason,
            contact_note=body.contact_note,
        )
        return _success(_block_out(block))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("update_block", e)


async def delete_block_route(session, block_id: int):
    try:
        await delete_block(session, block_id)
        return _success({"id": block_id}, message=f"Block {block_id} deleted")
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("delete_block", e)


async def get_fee_configuration_route(session):
    try:
        fee_config = await load_fee_configuration(session)
        return _success(FeeConfigurationOut(**fee_config.to_settings()).model_dump(mode="json"))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("get_fee_configuration", e)


async def update_fee_configuration_route(session, body: FeeConfigurationIn, actor: Actor):
    try:
        updates = body.model_dump(exclude_none=True)
        fee_config = await update_fee_configuration(session, updates, actor)
        return _success(FeeConfigurationOut(**fee_config.to_settings()).model_dump(mode="json"))
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("update_fee_configuration", e)


async def expire_holds_route(session):
    try:
        expired = await expire_stale_holds(session)
        return _success({"expired": expired})
    except BookingError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("expire_holds", e)
