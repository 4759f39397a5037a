"""
External API clients: payment gateway and notification sender.
"""
import hashlib
import hmac
import httpx
import logging
from dataclasses import dataclass
from typing import Optional

from config import (
    HTTP_TIMEOUT_SECONDS,
    NOTIFICATION_API_KEY,
    NOTIFICATION_URL,
    PAYMENT_GATEWAY_API_KEY,
    PAYMENT_GATEWAY_URL,
)
from errors import PaymentError

logger = logging.getLogger(__name__)


def get_api_headers(api_key: str) -> dict:
    """Get API request headers."""
    return {
        "Authorization": f"Bearer {api_key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str
    amount: float


class PaymentGatewayClient:
    """
    Thin client for the hosted-checkout payment gateway.

    Every transport or HTTP failure becomes a PaymentError. Nothing here
    retries: a failed call is reported to the caller, who decides.
    """

    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        api_key: str = PAYMENT_GATEWAY_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=get_api_headers(self.api_key))
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Payment gateway error on {path}: {e.response.status_code} - {e.response.text}")
            raise PaymentError(f"Payment gateway rejected the request ({e.response.status_code})") from e
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway unreachable on {path}: {str(e)}")
            raise PaymentError("Payment gateway is unavailable") from e
        except ValueError as e:
            logger.error(f"Payment gateway returned invalid JSON on {path}: {str(e)}")
            raise PaymentError("Payment gateway returned an invalid response") from e

    async def create_checkout_session(
        self,
        *,
        reservation_id: int,
        amount: float,
        description: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        currency: str = "EUR",
    ) -> CheckoutSession:
        """
        Open a hosted checkout for the amount due now.

        Args:
            reservation_id: Sent as metadata so the webhook maps back to exactly one reservation
            amount: Server-computed amount in currency units (sent in cents)

        Returns:
            CheckoutSession with the gateway's session id and redirect URL
        """
        data = await self._post(
            "/checkout/sessions",
            {
                "amount": to_cents(amount),
                "currency": currency.lower(),
                "description": description,
                "customer_email": customer_email,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": {"reservation_id": str(reservation_id)},
            },
        )
        session_id = data.get("id")
        if not session_id:
            raise PaymentError("Payment gateway did not return a session id")
        logger.info(f"Checkout session {session_id} created for reservation {reservation_id} (EUR{amount:.2f})")
        return CheckoutSession(session_id=session_id, url=data.get("url", ""), amount=amount)

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> dict:
        """Refund a captured payment in full, or partially when amount is given."""
        payload = {"payment_id": payment_id}
        if amount is not None:
            payload["amount"] = to_cents(amount)
        data = await self._post("/refunds", payload)
        logger.info(f"Refund {data.get('id')} issued for payment {payment_id}")
        return data


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 over the raw request body. An unconfigured secret rejects everything."""
    if not secret or not signature:
        return False
    expected = sign_webhook_payload(payload, secret)
    return hmac.compare_digest(expected, signature.strip())


class NotificationSender:
    """
    Fire-and-forget customer notifications (email relay).
    send() never raises; a failed notification is logged and dropped.
    """

    def __init__(
        self,
        url: str = NOTIFICATION_URL,
        api_key: str = NOTIFICATION_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    async def send(self, event: str, reservation) -> bool:
        if not self.url:
            logger.info(f"Notifications disabled - skipping {event} for reservation {reservation.id}")
            return False

        payload = {
            "event": event,
            "reservation_id": reservation.id,
            "customer_name": reservation.customer_name,
            "customer_email": reservation.customer_email,
            "pickup_date": reservation.pickup_date.isoformat(),
            "return_date": reservation.return_date.isoformat(),
            "total_price": reservation.total_price,
            "booking_status": reservation.booking_status.value,
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=get_api_headers(self.api_key))
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Notification {event} for reservation {reservation.id} failed: "
                f"{e.response.status_code} - {e.response.text}"
            )
            return False
        except Exception as e:
            logger.error(f"Notification {event} for reservation {reservation.id} failed: {str(e)}")
            return False

        logger.info(f"Notification {event} sent for reservation {reservation.id}")
        return True
