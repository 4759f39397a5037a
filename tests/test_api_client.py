import json
from datetime import datetime

import httpx
import pytest

from api_client import (
    NotificationSender,
    PaymentGatewayClient,
    get_api_headers,
    sign_webhook_payload,
    to_cents,
    verify_webhook_signature,
)
from errors import PaymentError
from models import BookingStatus, Reservation


@pytest.fixture
def reservation():
    return Reservation(
        id=7,
        customer_name="Anna Berger",
        customer_email="anna@example.com",
        pickup_date=datetime(2030, 5, 1, 10, 0),
        return_date=datetime(2030, 5, 4, 10, 0),
        total_price=177.0,
        booking_status=BookingStatus.CONFIRMED,
    )


def gateway_returning(response: httpx.Response) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        base_url="https://gateway.test/v1/",
        api_key="sk_test",
        transport=httpx.MockTransport(lambda request: response),
    )


def test_headers_carry_bearer_token():
    assert get_api_headers("sk_live")["Authorization"] == "Bearer sk_live"


@pytest.mark.parametrize("amount,cents", [(177.0, 17700), (0.1 + 0.2, 30), (12.34, 1234)])
def test_amounts_are_sent_in_cents(amount, cents):
    assert to_cents(amount) == cents


def test_valid_signature_is_accepted():
    payload = b'{"type":"checkout.completed"}'
    assert verify_webhook_signature(payload, sign_webhook_payload(payload, "whsec"), "whsec")


def test_tampered_payload_is_rejected():
    signature = sign_webhook_payload(b'{"amount":100}', "whsec")
    assert not verify_webhook_signature(b'{"amount":1}', signature, "whsec")


def test_unconfigured_secret_rejects_everything():
    payload = b"{}"
    assert not verify_webhook_signature(payload, sign_webhook_payload(payload, ""), "")
    assert not verify_webhook_signature(payload, None, "whsec")


async def test_checkout_session_request():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "cs_1", "url": "https://pay.test/cs_1"})

    client = PaymentGatewayClient(
        base_url="https://gateway.test/v1/", api_key="sk_test", transport=httpx.MockTransport(handler)
    )

    checkout = await client.create_checkout_session(
        reservation_id=12,
        amount=50.0,
        description="Reservation #12",
        customer_email="anna@example.com",
        success_url="http://localhost:3000/ok",
        cancel_url="http://localhost:3000/cancel",
    )

    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "https://gateway.test/v1/checkout/sessions"
    assert seen[0].headers["Authorization"] == "Bearer sk_test"
    assert body["amount"] == 5000
    assert body["currency"] == "eur"
    assert body["metadata"] == {"reservation_id": "12"}
    assert checkout.session_id == "cs_1"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"url": "https://pay.test/x"}),
    ],
)
async def test_bad_gateway_responses_raise_payment_error(response):
    client = gateway_returning(response)

    with pytest.raises(PaymentError):
        await client.create_checkout_session(
            reservation_id=1,
            amount=10.0,
            description="Reservation #1",
            customer_email="a@example.com",
            success_url="http://localhost:3000/ok",
            cancel_url="http://localhost:3000/cancel",
        )


async def test_unreachable_gateway_raises_payment_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PaymentGatewayClient(base_url="https://gateway.test/v1", transport=httpx.MockTransport(handler))

    with pytest.raises(PaymentError):
        await client.refund_payment("pay_1")


async def test_partial_refund_sends_amount():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "re_1"})

    client = PaymentGatewayClient(base_url="https://gateway.test/v1", transport=httpx.MockTransport(handler))

    await client.refund_payment("pay_1", amount=25.5)

    assert seen == [{"payment_id": "pay_1", "amount": 2550}]


async def test_notification_payload(reservation):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    sender = NotificationSender(url="https://notify.test/send", transport=httpx.MockTransport(handler))

    assert await sender.send("booking_confirmed", reservation)
    assert seen[0]["event"] == "booking_confirmed"
    assert seen[0]["reservation_id"] == 7
    assert seen[0]["booking_status"] == "Confirmed"


async def test_failed_notification_is_swallowed(reservation, caplog):
    sender = NotificationSender(
        url="https://notify.test/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
    )

    assert await sender.send("booking_cancelled", reservation) is False
    assert "failed" in caplog.text


async def test_notification_transport_error_is_swallowed(reservation):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    sender = NotificationSender(url="https://notify.test/send", transport=httpx.MockTransport(handler))

    assert await sender.send("booking_confirmed", reservation) is False


async def test_notifications_disabled_without_url(reservation):
    assert await NotificationSender(url="").send("booking_confirmed", reservation) is False
