"""
Razorpay gateway adapter.

Wraps the blocking razorpay SDK so every call runs on a worker thread under a
bounded timeout, and holds the HMAC-SHA256 signature checks used by checkout
callbacks and webhooks.
"""

import asyncio
import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, Optional

import razorpay

from app.config import settings

logger = logging.getLogger(__name__)

# Payment states that count as money received
SUCCESS_STATES = {"captured", "authorized"}


class GatewayError(Exception):
    """The gateway rejected a call or could not be reached."""


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within RAZORPAY_TIMEOUT_SECONDS."""


# ==================== SIGNATURES ====================

def compute_signature(secret: str, message: str | bytes) -> str:
    """Hex HMAC-SHA256 of message keyed by secret."""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    secret: Optional[str] = None,
) -> bool:
    """
    Check a checkout callback signature.

    Razorpay signs the literal string "<order_id>|<payment_id>" with the key
    secret.
    """
    secret = secret or settings.RAZORPAY_KEY_SECRET
    if not secret or not signature:
        return False
    expected = compute_signature(secret, f"{gateway_order_id}|{gateway_payment_id}")
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Check the X-Razorpay-Signature header against the raw request body.

    Uses RAZORPAY_WEBHOOK_SECRET, falling back to the key secret.
    """
    secret = secret or settings.webhook_secret
    if not secret:
        logger.warning("Webhook secret not configured")
        return False
    if not signature:
        return False
    expected = compute_signature(secret, body)
    is_valid = hmac.compare_digest(expected, signature)
    if not is_valid:
        logger.warning("Invalid webhook signature")
    return is_valid


# ==================== CLIENT ====================

class RazorpayGateway:
    """
    Async facade over razorpay.Client.

    Amounts are passed in minor units (paise), as the API expects.
    """

    def __init__(self, key_id: str, key_secret: str, timeout: float = 10.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout
        self._client: Optional[razorpay.Client] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    async def _call(self, action: str, fn: Callable[..., Dict[str, Any]], *args, **kwargs) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Razorpay {action} timed out after {self.timeout}s")
            raise GatewayTimeoutError(f"{action} timed out") from e
        except Exception as e:
            logger.error(f"Razorpay {action} failed: {e}")
            raise GatewayError(str(e)) from e

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        data = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        order = await self._call("order.create", self.client.order.create, data=data)
        logger.info(f"Created Razorpay order {order.get('id')} for receipt {receipt}")
        return order

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("payment.fetch", self.client.payment.fetch, payment_id)

    async def refund_payment(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"notes": notes or {}}
        if amount:
            data["amount"] = amount
        refund = await self._call("payment.refund", self.client.payment.refund, payment_id, data)
        logger.info(f"Refund initiated: {refund.get('id')} for payment {payment_id}")
        return refund


_gateway: Optional[RazorpayGateway] = None


def get_gateway() -> RazorpayGateway:
    """Process-wide gateway built from settings."""
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            timeout=settings.RAZORPAY_TIMEOUT_SECONDS,
        )
    return _gateway
