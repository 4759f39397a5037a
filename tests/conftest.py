"""
Shared fixtures: a throwaway SQLite database per test, factories for vehicles
and reservations, and httpx MockTransport fakes for the payment gateway and the
notification relay.

Every transaction takes the SQLite write lock at BEGIN, so a session that has
only read something still holds the lock until it commits or rolls back. Tests
that mix the ``session`` fixture with factories create their data first.
"""
import json
import secrets
from datetime import datetime, time, timedelta

import httpx
import pytest
from sqlalchemy import text

import config
from api_client import NotificationSender, PaymentGatewayClient
from config import DEFAULT_FEE_SETTINGS
from database import create_engine_for_url, create_session_maker, init_db
from models import BookingStatus, PaymentMethod, PaymentStatus, Reservation, Vehicle, VehicleStatus, local_now
from pricing import FeeConfiguration, calculate_rental_days

ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "whsec_test"
SUCCESS_URL = "http://localhost:3000/booking/success"
CANCEL_URL = "http://localhost:3000/booking/cancel"


def day_at(days: int, hour: int = 10, minute: int = 0) -> datetime:
    """Business-local wall-clock time `days` from today."""
    return datetime.combine(local_now().date() + timedelta(days=days), time(hour, minute))


async def store_raw_statuses(session_maker, reservation_id, booking_status, payment_status):
    """Overwrite stored status strings as-is, the way older rows spelled them."""
    async with session_maker() as s:
        await s.execute(
            text("UPDATE reservations SET booking_status = :booking, payment_status = :payment WHERE id = :id"),
            {"booking": booking_status, "payment": payment_status, "id": reservation_id},
        )
        await s.commit()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fee_config():
    return FeeConfiguration.from_settings(DEFAULT_FEE_SETTINGS)


@pytest.fixture
def make_vehicle(session_maker):
    async def factory(price_per_day=50.0, minimum_age=21, status=VehicleStatus.AVAILABLE, brand="VW", model="Golf"):
        async with session_maker() as s:
            vehicle = Vehicle(
                brand=brand,
                model=model,
                price_per_day=price_per_day,
                minimum_age=minimum_age,
                status=status,
            )
            s.add(vehicle)
            await s.commit()
            return vehicle

    return factory


@pytest.fixture
async def vehicle(make_vehicle):
    return await make_vehicle()


@pytest.fixture
def make_reservation(session_maker):
    """Insert a reservation directly, bypassing the booking service (the exclusion guard still applies)."""

    async def factory(
        vehicle,
        pickup,
        return_date,
        booking_status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        payment_method=PaymentMethod.CARD,
        **fields,
    ):
        days = calculate_rental_days(pickup, return_date)
        total = days * vehicle.price_per_day + 7.0
        values = dict(
            vehicle_id=vehicle.id,
            customer_name="Anna Berger",
            customer_email="anna@example.com",
            customer_age=30,
            pickup_date=pickup,
            return_date=return_date,
            pickup_location="Firmensitz",
            return_location="Firmensitz",
            rental_days=days,
            rental_cost=days * vehicle.price_per_day,
            cleaning_fee=7.0,
            total_price=total,
            payment_method=payment_method,
            booking_status=booking_status,
            payment_status=payment_status,
            guest_token=secrets.token_urlsafe(24),
        )
        values.update(fields)
        async with session_maker() as s:
            reservation = Reservation(**values)
            s.add(reservation)
            await s.commit()
            return reservation

    return factory


class FakeGateway:
    """Records every gateway call; flip `fail` to make the next calls return 503."""

    def __init__(self):
        self.requests = []
        self.fail = False
        self._sessions = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body))
        if self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        if request.url.path.endswith("/checkout/sessions"):
            self._sessions += 1
            session_id = f"cs_test_{self._sessions}"
            return httpx.Response(200, json={"id": session_id, "url": f"https://pay.test/{session_id}"})
        if request.url.path.endswith("/refunds"):
            return httpx.Response(200, json={"id": f"re_{body.get('payment_id')}", "status": "succeeded"})
        return httpx.Response(404, json={"error": "not found"})

    def calls(self, suffix: str):
        return [body for path, body in self.requests if path.endswith(suffix)]


@pytest.fixture
def gateway_backend():
    return FakeGateway()


@pytest.fixture
def gateway(gateway_backend):
    return PaymentGatewayClient(
        base_url="https://gateway.test/v1",
        api_key="sk_test",
        transport=httpx.MockTransport(gateway_backend.handler),
    )


@pytest.fixture
def sent_notifications():
    return []


@pytest.fixture
def notifier(sent_notifications):
    def handler(request: httpx.Request) -> httpx.Response:
        sent_notifications.append(json.loads(request.content))
        return httpx.Response(202, json={"queued": True})

    return NotificationSender(
        url="https://notify.test/send",
        api_key="nk_test",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
async def client(session_maker, gateway, notifier, monkeypatch):
    from database import get_session
    from main import app
    from routes import get_notifier, get_payment_gateway

    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(config, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)

    async def override_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
