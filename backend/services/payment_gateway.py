"""Payment Gateway adapters - hosted checkout + payment status lookup.

Two providers are supported, selected by PAYMENT_PROVIDER:
- bold (default): embedded Bold checkout, status via Bold's notification fallback API
- stripe: Stripe Checkout sessions

Every adapter exposes the same surface:
- ensure_checkout_available()  -> raises GatewayUnavailable / ConfigurationError
- create_checkout(...)         -> (checkout payload, provider_reference)
- lookup_payment_status(...)   -> PaymentStatusResult (never raises on transport errors)
- parse_redirect(params)       -> RedirectConfirmation
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Mapping, Tuple

import httpx
import stripe

from models import PaymentProvider
from services.payment_config_service import (
    ConfigurationError, build_payment_config, get_public_app_url,
)

logger = logging.getLogger(__name__)

BOLD_CHECKOUT_SCRIPT_URL = "https://checkout.bold.co/library/boldPaymentButton.js"
BOLD_NOTIFICATIONS_URL = "https://integrations.api.bold.co/payments/webhook/notifications/{order_id}"
BOLD_APPROVED = "SALE_APPROVED"
BOLD_VOID_APPROVED = "VOID_APPROVED"

ORDER_PREFIX = "DOC"


class GatewayUnavailable(Exception):
    """The gateway (checkout library or API) could not be reached."""


@dataclass
class PaymentStatusResult:
    order_id: str
    approved: bool = False
    status: str = "PENDING"


@dataclass
class RedirectConfirmation:
    order_id: Optional[str]
    approved: bool
    raw_status: Optional[str] = None


def build_order_id(document_id: str, timestamp_ms: int) -> str:
    """Order reference format: DOC-{document_id}-{epoch_ms}"""
    return f"{ORDER_PREFIX}-{document_id}-{timestamp_ms}"


def parse_order_document_id(order_id: Optional[str]) -> Optional[str]:
    """Extract the document id from an order reference, or None if malformed."""
    parts = (order_id or "").split("-")
    if len(parts) != 3 or parts[0] != ORDER_PREFIX or not parts[1] or not parts[2].isdigit():
        return None
    return parts[1]


class BoldGateway:
    """Bold embedded checkout + notification lookup over HTTP."""

    provider = PaymentProvider.BOLD

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def ensure_checkout_available(self) -> None:
        """Probe the hosted checkout library the browser will load."""
        try:
            async with self._client() as client:
                response = await client.head(BOLD_CHECKOUT_SCRIPT_URL)
        except httpx.HTTPError as e:
            logger.error(f"Bold checkout library unreachable: {e}")
            raise GatewayUnavailable("Payment gateway checkout library is unavailable") from e
        if response.status_code >= 400:
            logger.error(f"Bold checkout library returned HTTP {response.status_code}")
            raise GatewayUnavailable(
                f"Payment gateway checkout library returned HTTP {response.status_code}"
            )

    async def create_checkout(
        self,
        order_id: str,
        document: Dict[str, Any],
        origin: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        config = build_payment_config(
            order_id=order_id,
            amount=document["price"],
            document_type=document["document_type"],
            token=document["token"],
            origin=origin,
        )
        return config, None

    async def lookup_payment_status(
        self,
        order_id: str,
        provider_reference: Optional[str] = None,
    ) -> PaymentStatusResult:
        """
        Ask Bold for notifications recorded against this order reference.
        Transport errors and empty answers mean "not yet approved".
        """
        api_key = (os.getenv("BOLD_API_KEY") or "").strip()
        if not api_key:
            logger.error("BOLD_API_KEY is not set; payment status lookup skipped for %s", order_id)
            return PaymentStatusResult(order_id=order_id)

        try:
            async with self._client() as client:
                response = await client.get(
                    BOLD_NOTIFICATIONS_URL.format(order_id=order_id),
                    params={"is_external_reference": "true"},
                    headers={
                        "Authorization": f"x-api-key {api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            logger.warning(f"Bold status lookup failed for {order_id}: {e}")
            return PaymentStatusResult(order_id=order_id)

        if response.status_code != 200:
            logger.info("Bold status lookup order_id=%s http_status=%s", order_id, response.status_code)
            return PaymentStatusResult(order_id=order_id)

        try:
            notifications = (response.json() or {}).get("notifications") or []
        except ValueError:
            logger.warning(f"Bold status lookup returned non-JSON body for {order_id}")
            return PaymentStatusResult(order_id=order_id)

        types = [n.get("type") for n in notifications if isinstance(n, dict)]
        if not types:
            return PaymentStatusResult(order_id=order_id)

        approved = BOLD_APPROVED in types and BOLD_VOID_APPROVED not in types
        return PaymentStatusResult(order_id=order_id, approved=approved, status=types[0])

    def parse_redirect(self, params: Mapping[str, str]) -> RedirectConfirmation:
        order_id = params.get("bold-order-id")
        tx_status = params.get("bold-tx-status")
        return RedirectConfirmation(
            order_id=order_id,
            approved=bool(order_id) and (tx_status or "").lower() == "approved",
            raw_status=tx_status,
        )


class StripeGateway:
    """Stripe Checkout sessions (one-time payment mode)."""

    provider = PaymentProvider.STRIPE

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = (api_key or os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
        self.currency = (os.getenv("STRIPE_CURRENCY") or "cop").strip().lower()
        self.minor_units = int(os.getenv("STRIPE_MINOR_UNITS_PER_MAJOR", "100"))

    async def ensure_checkout_available(self) -> None:
        if not self.api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")

    async def create_checkout(
        self,
        order_id: str,
        document: Dict[str, Any],
        origin: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        base = get_public_app_url(origin)
        token = document["token"]
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                client_reference_id=order_id,
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": int(document["price"]) * self.minor_units,
                        "product_data": {"name": f"Documento: {document['document_type']}"},
                    },
                    "quantity": 1,
                }],
                metadata={
                    "order_id": order_id,
                    "document_id": document["id"],
                    "token": token,
                },
                success_url=f"{base}/?code={token}&payment=success&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base}/?code={token}&payment=cancelled",
            )
        except stripe.error.APIConnectionError as e:
            logger.error(f"Stripe unreachable creating session for {order_id}: {e}")
            raise GatewayUnavailable("Payment gateway is unavailable") from e
        except stripe.error.StripeError as e:
            logger.error(f"Stripe checkout error for {order_id}: {e}")
            raise ConfigurationError(f"Failed to create checkout session: {str(e)}") from e

        return {"checkout_url": session.url, "session_id": session.id, "orderId": order_id}, session.id

    async def lookup_payment_status(
        self,
        order_id: str,
        provider_reference: Optional[str] = None,
    ) -> PaymentStatusResult:
        if not provider_reference:
            return PaymentStatusResult(order_id=order_id)
        try:
            session = stripe.checkout.Session.retrieve(provider_reference, api_key=self.api_key)
        except stripe.error.StripeError as e:
            logger.warning(f"Stripe status lookup failed for {order_id}: {e}")
            return PaymentStatusResult(order_id=order_id)
        payment_status = session.get("payment_status") or "unpaid"
        return PaymentStatusResult(
            order_id=order_id,
            approved=payment_status == "paid",
            status=payment_status.upper(),
        )

    def parse_redirect(self, params: Mapping[str, str]) -> RedirectConfirmation:
        # Stripe redirects carry no explicit transaction status
        return RedirectConfirmation(order_id=None, approved=False, raw_status=params.get("payment"))


def get_payment_gateway(provider: Optional[str] = None):
    """Build the gateway adapter configured by PAYMENT_PROVIDER."""
    name = (provider or os.getenv("PAYMENT_PROVIDER") or PaymentProvider.BOLD.value).strip().lower()
    if name == PaymentProvider.STRIPE.value:
        return StripeGateway()
    if name == PaymentProvider.BOLD.value:
        return BoldGateway()
    raise ConfigurationError(f"Unknown PAYMENT_PROVIDER: {name}")
