import json

from api_client import sign_webhook_payload
from conftest import CANCEL_URL, SUCCESS_URL, WEBHOOK_SECRET, day_at
from models import BookingStatus, PaymentStatus


def reservation_body(vehicle, **overrides):
    body = {
        "vehicle_id": vehicle.id,
        "pickup_date": day_at(3).date().isoformat(),
        "return_date": day_at(6).date().isoformat(),
        "return_location": {"name": "airport"},
        "customer_name": "Lukas Gruber",
        "customer_email": "lukas@example.com",
        "customer_age": 34,
        "success_url": SUCCESS_URL,
        "cancel_url": CANCEL_URL,
    }
    body.update(overrides)
    return body


async def post_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode()
    return await client.post(
        "/webhooks/payments",
        content=payload,
        headers={"Content-Type": "application/json", "X-Gateway-Signature": sign_webhook_payload(payload, secret)},
    )


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert "Rental Booking API" in response.json()["message"]


async def test_vehicle_listing_shows_availability(client, vehicle, make_vehicle, make_reservation):
    booked = await make_vehicle(model="Passat")
    await make_reservation(booked, day_at(1), day_at(5))

    response = await client.get(
        "/vehicles",
        params={"pickup_date": day_at(2).date().isoformat(), "return_date": day_at(3).date().isoformat()},
    )

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 2
    availability = {item["model"]: item["is_available"] for item in body["data"]}
    assert availability == {"Golf": True, "Passat": False}


async def test_availability_for_unknown_vehicle_is_404(client):
    response = await client.get("/vehicles/999/availability")
    assert response.status_code == 404


async def test_quote_returns_breakdown(client, vehicle):
    body = reservation_body(vehicle)

    response = await client.post("/quotes", json=body)

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["price"]["total"] == 177.0
    assert data["price"]["location_fees"] == 20.0
    assert data["return_location"] == "Flughafen"
    assert data["availability"]["is_available"] is True


async def test_reservation_returns_checkout(client, vehicle, gateway_backend):
    response = await client.post("/reservations", json=reservation_body(vehicle))

    data = response.json()["data"]
    assert response.status_code == 201
    assert data["checkout_url"] == "https://pay.test/cs_test_1"
    assert data["guest_token"]
    assert data["price"]["amount_due_now"] == 177.0
    assert gateway_backend.calls("/checkout/sessions")[0]["amount"] == 17700


async def test_conflicting_reservation_is_409_with_conflict_type(client, vehicle, make_reservation):
    await make_reservation(vehicle, day_at(4), day_at(5))

    response = await client.post("/reservations", json=reservation_body(vehicle))

    assert response.status_code == 409
    assert response.json()["detail"]["conflict_type"] == "booking"


async def test_invalid_reservation_is_400(client, vehicle):
    response = await client.post("/reservations", json=reservation_body(vehicle, customer_age=18))

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "ValidationError"


async def test_gateway_outage_is_402(client, vehicle, gateway_backend):
    gateway_backend.fail = True

    response = await client.post("/reservations", json=reservation_body(vehicle))

    assert response.status_code == 402


async def test_webhook_with_bad_signature_is_rejected(client):
    response = await post_webhook(client, {"type": "checkout.completed", "data": {}}, secret="wrong")
    assert response.status_code == 401


async def test_webhook_without_signature_is_rejected(client):
    response = await client.post("/webhooks/payments", json={"type": "checkout.completed"})
    assert response.status_code == 401


async def test_signed_webhook_confirms_reservation(client, vehicle, admin_headers, sent_notifications):
    created = (await client.post("/reservations", json=reservation_body(vehicle))).json()["data"]

    response = await post_webhook(
        client, {"type": "checkout.completed", "data": {"session_id": "cs_test_1", "payment_id": "pay_42"}}
    )

    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "confirmed"
    reservation = (
        await client.get(f"/admin/reservations/{created['reservation_id']}", headers=admin_headers)
    ).json()["data"]
    assert reservation["booking_status"] == BookingStatus.CONFIRMED.value
    assert reservation["payment_status"] == PaymentStatus.PAID.value
    assert sent_notifications[0]["event"] == "booking_confirmed"


async def test_admin_endpoints_require_token(client, vehicle):
    assert (await client.get("/admin/blocks")).status_code == 403
    assert (await client.get("/admin/blocks", headers={"X-Admin-Token": "nope"})).status_code == 403


async def test_pickup_and_return_fuel_flow(client, vehicle, make_reservation, admin_headers):
    reservation = await make_reservation(vehicle, day_at(0, 8), day_at(3))
    url = f"/admin/reservations/{reservation.id}/fuel"

    pickup = await client.post(url, json={"phase": "pickup", "level": 80}, headers=admin_headers)
    returned = await client.post(url, json={"phase": "return", "level": 60}, headers=admin_headers)

    assert pickup.json()["data"]["transition"] == "Active"
    data = returned.json()["data"]
    assert data["transition"] == "Completed"
    assert data["settlement_status"] == "shortfall"
    assert data["fuel_charge"] == 10.0


async def test_fuel_reading_out_of_range_is_400(client, vehicle, make_reservation, admin_headers):
    reservation = await make_reservation(vehicle, day_at(1), day_at(3))

    response = await client.post(
        f"/admin/reservations/{reservation.id}/fuel", json={"phase": "pickup", "level": 120}, headers=admin_headers
    )

    assert response.status_code == 400


async def test_manual_reservation_then_approval(client, vehicle, admin_headers, sent_notifications):
    body = reservation_body(vehicle, customer_age=None, contract_number="V-2030-0042", created_by="front-desk")
    del body["success_url"], body["cancel_url"]

    created = await client.post("/admin/reservations", json=body, headers=admin_headers)
    reservation_id = created.json()["data"]["id"]
    approved = await client.post(f"/admin/reservations/{reservation_id}/approve", headers=admin_headers)

    assert created.status_code == 201
    assert created.json()["data"]["booking_status"] == "PendingVerification"
    assert approved.json()["data"]["booking_status"] == "Confirmed"
    assert [n["event"] for n in sent_notifications] == ["booking_confirmed"]


async def test_guest_can_view_and_cancel_with_refund(client, vehicle, make_reservation, gateway_backend):
    reservation = await make_reservation(
        vehicle, day_at(5), day_at(7), guest_token="guest-abc", gateway_payment_id="pay_9"
    )

    viewed = await client.get("/reservations/guest/guest-abc")
    cancelled = await client.post("/reservations/guest/guest-abc/cancel")

    assert viewed.json()["data"]["id"] == reservation.id
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["booking_status"] == "Cancelled"
    assert gateway_backend.calls("/refunds") == [{"payment_id": "pay_9"}]


async def test_unknown_guest_token_is_404(client):
    assert (await client.get("/reservations/guest/nope")).status_code == 404


async def test_overlapping_blocks_over_http(client, vehicle, admin_headers):
    block = {
        "vehicle_id": vehicle.id,
        "blocked_from": day_at(1).isoformat(),
        "blocked_until": day_at(3).isoformat(),
        "reason": "Service",
    }

    first = await client.post("/admin/blocks", json=block, headers=admin_headers)
    second = await client.post("/admin/blocks", json=block, headers=admin_headers)
    listed = await client.get("/admin/blocks", params={"vehicle_id": vehicle.id}, headers=admin_headers)

    assert first.status_code == 201
    assert first.json()["data"]["created_by"] == "admin"
    assert second.status_code == 409
    assert second.json()["detail"]["conflict_type"] == "block"
    assert listed.json()["total"] == 1


async def test_delete_paid_reservation_needs_force(client, vehicle, make_reservation, admin_headers):
    reservation = await make_reservation(vehicle, day_at(1), day_at(3))
    url = f"/admin/reservations/{reservation.id}"

    refused = await client.delete(url, headers=admin_headers)
    forced = await client.delete(url, params={"force": "true"}, headers=admin_headers)

    assert refused.status_code == 409
    assert forced.status_code == 200
    assert (await client.get(url, headers=admin_headers)).status_code == 404


async def test_fee_configuration_read_and_update(client, admin_headers):
    current = await client.get("/admin/fee-configuration", headers=admin_headers)
    updated = await client.put(
        "/admin/fee-configuration", json={"cleaning_fee": {"amount": 9}}, headers=admin_headers
    )
    rejected = await client.put(
        "/admin/fee-configuration", json={"business_hours": {"open": "21:00"}}, headers=admin_headers
    )

    assert current.json()["data"]["after_hours_fee"] == {"amount": 30.0}
    assert updated.json()["data"]["cleaning_fee"] == {"amount": 9.0}
    assert rejected.status_code == 400


async def test_expire_holds_endpoint(client, admin_headers):
    response = await client.post("/admin/holds/expire", headers=admin_headers)
    assert response.json()["data"] == {"expired": 0}
