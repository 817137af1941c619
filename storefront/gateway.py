"""
Storefront: payment gateway client

Creates Razorpay orders ("intents") over HTTP and verifies the HMAC-SHA256
signatures Razorpay hands back to the browser and attaches to webhooks.

Any transport problem, timeout or non-2xx answer becomes GatewayUnavailable.
A timeout does not mean the intent wasn't created, so it is logged with the
receipt for later reconciliation; no local order exists for it either way.
"""

import hashlib
import hmac
import logging

import httpx
from pydantic import BaseModel

from . import config
from .errors import GatewayUnavailable
from .models import Settings

logger = logging.getLogger(__name__)


class Intent(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: str = ""


class RazorpayClient:
    """Thin async client for the part of the Razorpay Orders API the checkout needs."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = config.RAZORPAY_API_URL,
        timeout: float = config.GATEWAY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def create_intent(self, amount_minor: int, currency: str, receipt: str) -> Intent:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                resp = await client.post(
                    "/orders",
                    json={
                        "amount": amount_minor,
                        "currency": currency,
                        "receipt": receipt,
                        "payment_capture": 1,
                    },
                )
                resp.raise_for_status()
            except httpx.TimeoutException as e:
                logger.warning(
                    "Gateway timed out creating intent for receipt %s; it may exist remotely", receipt
                )
                raise GatewayUnavailable("request timed out") from e
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Gateway refused intent for receipt %s: %s %s",
                    receipt, e.response.status_code, e.response.text,
                )
                raise GatewayUnavailable(f"gateway answered {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise GatewayUnavailable(str(e) or e.__class__.__name__) from e

        body = resp.json()
        return Intent(
            id=body["id"],
            amount=body["amount"],
            currency=body["currency"],
            receipt=body.get("receipt") or receipt,
        )


def client_for(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> RazorpayClient:
    razorpay = settings.payment_methods.razorpay
    return RazorpayClient(razorpay.key_id, razorpay.key_secret, transport=transport)


# ── Signatures ───────────────────────────────────


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _matches(expected: str, signature: str) -> bool:
    # Compared as bytes: header values and JSON strings may carry non-ASCII text.
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape"))


def payment_signature(secret: str, intent_id: str, payment_id: str) -> str:
    return _hmac_hex(secret, f"{intent_id}|{payment_id}".encode())


def verify_payment_signature(secret: str, intent_id: str, payment_id: str, signature: str) -> bool:
    if not secret or not signature:
        return False
    return _matches(payment_signature(secret, intent_id, payment_id), signature)


def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return _matches(_hmac_hex(secret, body), signature)
