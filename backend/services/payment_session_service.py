"""
Payment Session Service
Opens hosted checkout sessions for priced documents and settles free documents.

Flow:
- price > 0 and status in_client_review -> open(): new order_id per attempt, checkout payload
- price == 0 -> settle_free_document(): conditional write straight to paid, no gateway
"""
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from database import database
from models import AuditAction, PaymentSessionStatus
from services.document_workflow import (
    DocumentStatus, TransitionType, InvalidTransition, is_released,
)
from services.document_store import update_status, find_by_id, StatusConflict
from services.payment_gateway import build_order_id, get_payment_gateway
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class PaymentNotRequired(ValueError):
    """Free documents must use the fast path, never a paid session."""


@dataclass
class SessionHandle:
    order_id: str
    document_id: str
    token: str
    amount: int
    provider: str
    checkout: Dict[str, Any]
    provider_reference: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaymentSessionService:
    """Starts payment attempts; never mutates the Document Record."""

    def __init__(self, gateway=None):
        self.gateway = gateway or get_payment_gateway()
        self._last_order_ms = 0

    def _next_order_timestamp(self) -> int:
        # Strictly increasing, so back-to-back attempts never share an order id
        now_ms = int(time.time() * 1000)
        self._last_order_ms = max(now_ms, self._last_order_ms + 1)
        return self._last_order_ms

    async def open(self, document: Dict[str, Any], origin: Optional[str] = None) -> SessionHandle:
        """
        Open a checkout session for a priced document awaiting client approval.

        Raises PaymentNotRequired, InvalidTransition, GatewayUnavailable, ConfigurationError.
        """
        price = int(document.get("price") or 0)
        if price <= 0:
            raise PaymentNotRequired(f"Document {document['id']} is free; use the free-document path")

        current = DocumentStatus(document["status"])
        if current != DocumentStatus.IN_CLIENT_REVIEW:
            raise InvalidTransition(current, DocumentStatus.PAID)

        await self.gateway.ensure_checkout_available()

        # Each attempt gets a distinct order id; reconciliation resolves by document
        order_id = build_order_id(document["id"], self._next_order_timestamp())
        checkout, provider_reference = await self.gateway.create_checkout(order_id, document, origin=origin)

        handle = SessionHandle(
            order_id=order_id,
            document_id=document["id"],
            token=document["token"],
            amount=price,
            provider=self.gateway.provider.value,
            checkout=checkout,
            provider_reference=provider_reference,
        )

        db = database.get_db()
        await db.payment_sessions.insert_one({
            "order_id": handle.order_id,
            "document_id": handle.document_id,
            "token": handle.token,
            "amount": handle.amount,
            "currency": checkout.get("currency"),
            "provider": handle.provider,
            "provider_reference": provider_reference,
            "status": PaymentSessionStatus.OPEN.value,
            "created_at": handle.created_at,
            "updated_at": handle.created_at,
        })

        logger.info(
            "PAYMENT_SESSION_OPENED document_id=%s order_id=%s provider=%s amount=%s",
            handle.document_id, order_id, handle.provider, price,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_SESSION_OPENED,
            actor_type="customer",
            resource_id=handle.document_id,
            metadata={"order_id": order_id, "provider": handle.provider, "amount": price},
        )
        return handle

    async def settle_free_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """
        Synthesize payment for a price == 0 document.
        A lost race (already paid/downloaded) is a success-no-op.
        """
        if int(document.get("price") or 0) != 0:
            raise InvalidTransition(
                document["status"], DocumentStatus.PAID,
                f"Document {document['id']} has a price; open a payment session instead",
            )

        current = DocumentStatus(document["status"])
        if is_released(current):
            return document

        # Free documents may skip review entirely, or be approved after it
        expected = current if current == DocumentStatus.IN_CLIENT_REVIEW else DocumentStatus.REQUESTED

        try:
            updated = await update_status(
                document["id"],
                expected,
                DocumentStatus.PAID,
                extra_fields={"paid_at": datetime.now(timezone.utc), "payment_channel": "free"},
                triggered_by_type="customer",
                transition_type=TransitionType.CUSTOMER_ACTION,
                reason="Free document auto-approval",
            )
            logger.info("PAYMENT_MARKED_PAID document_id=%s channel=free", document["id"])
            return updated
        except StatusConflict as e:
            latest = await find_by_id(document["id"])
            if latest and is_released(latest["status"]):
                logger.info(f"Free document {document['id']} already released ({latest['status']})")
                return latest
            raise InvalidTransition(e.actual or current, DocumentStatus.PAID) from e
