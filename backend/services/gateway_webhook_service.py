"""Gateway Webhook Service - signed out-of-band payment notifications.

Bold posts a notification for every sale/void outcome. This is a third
confirmation channel racing the redirect and the polling loop, so it ends in
the same PaymentReconciler.mark_paid() conditional write.

Key Principles:
1. Signature verification: HMAC-SHA256 (hex) of the base64-encoded raw body
2. Idempotency: every event_id is recorded once in gateway_events
3. Status only moves forward: rejections and voids are logged, never written
4. Audit logging: reversals and failures leave an audit entry

Events Handled:
- SALE_APPROVED  -> mark_paid(channel="webhook") when the amount covers the order
                   (short payments are audited for manual follow-up)
- SALE_REJECTED  -> logged
- VOID_APPROVED  -> logged + audited (manual follow-up)
- VOID_REJECTED  -> logged
"""
import os
import hmac
import json
import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, GatewayEventStatus
from services.document_store import find_by_id
from services.payment_gateway import parse_order_document_id
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SALE_APPROVED = "SALE_APPROVED"
SALE_REJECTED = "SALE_REJECTED"
VOID_APPROVED = "VOID_APPROVED"
VOID_REJECTED = "VOID_REJECTED"
KNOWN_EVENT_TYPES = {SALE_APPROVED, SALE_REJECTED, VOID_APPROVED, VOID_REJECTED}

# process_webhook() messages the route maps to non-200 responses
INVALID_SIGNATURE = "Invalid signature"
NOT_CONFIGURED = "Payment system not configured"
INVALID_PAYLOAD = "Invalid payload"


def compute_signature(body: bytes, secret_key: str) -> str:
    """Hex HMAC-SHA256 of base64(body) keyed with the merchant secret."""
    encoded = base64.b64encode(body)
    return hmac.new(secret_key.encode("utf-8"), encoded, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret_key: str) -> bool:
    if not signature or not secret_key:
        return False
    return hmac.compare_digest(compute_signature(body, secret_key), signature.strip())


def _coerce_amount(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _extract_webhook_context(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data") or {}
    metadata = data.get("metadata") or {}
    amount = data.get("amount") or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "payment_id": data.get("payment_id"),
        "order_reference": metadata.get("reference"),
        "amount": amount.get("total") if isinstance(amount, dict) else amount,
    }


class GatewayWebhookService:
    """Bold webhook handler with idempotency."""

    def __init__(self, reconciler):
        self.reconciler = reconciler

    async def process_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature
        secret_key = (os.getenv("BOLD_SECRET_KEY") or "").strip()
        if not secret_key:
            logger.error("BOLD_SECRET_KEY not set - rejecting gateway webhook")
            return False, NOT_CONFIGURED, None
        if not verify_signature(payload, signature, secret_key):
            logger.error("Gateway webhook signature verification failed")
            return False, INVALID_SIGNATURE, None

        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.error(f"Gateway webhook parse error: {e}")
            return False, INVALID_PAYLOAD, {"error": str(e)}
        if not isinstance(event, dict):
            return False, INVALID_PAYLOAD, {"error": "payload must be a JSON object"}

        ctx = _extract_webhook_context(event)
        event_id = ctx["event_id"]
        event_type = ctx["event_type"]
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s order_reference=%s payment_id=%s",
            event_id, event_type, ctx["order_reference"], ctx["payment_id"],
        )

        if not event_id or event_type not in KNOWN_EVENT_TYPES:
            return False, INVALID_PAYLOAD, {"error": f"Unknown webhook type: {event_type}"}
        if not ctx["order_reference"]:
            return False, INVALID_PAYLOAD, {"error": "No order reference"}

        # Step 2: Idempotency check
        db = database.get_db()
        existing = await db.gateway_events.find_one({"event_id": event_id})
        if existing and existing.get("status") == GatewayEventStatus.PROCESSED.value:
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "order_reference": ctx["order_reference"],
            "payment_id": ctx["payment_id"],
            "amount": ctx["amount"],
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": GatewayEventStatus.PROCESSING.value,
            "error": None,
            "document_id": None,
            "raw_payload": event,
        }
        if existing:
            await db.gateway_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.gateway_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        try:
            result = await self._handle_event(event_type, ctx)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await db.gateway_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": GatewayEventStatus.FAILED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await create_audit_log(
                action=AuditAction.GATEWAY_EVENT_FAILED,
                actor_type="gateway",
                resource_type="gateway_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
            )
            # Acknowledge so the gateway stops retrying; the sweep job covers approvals
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

        await db.gateway_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": GatewayEventStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc),
                "document_id": result.get("document_id"),
            }},
        )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s document_id=%s outcome=%s",
            event_id, event_type, result.get("document_id"), result.get("outcome"),
        )
        return True, "Processed", result

    async def resolve_order(self, order_reference: str) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        """Order reference -> (document id, session row), via the recorded session first."""
        db = database.get_db()
        session = await db.payment_sessions.find_one({"order_id": order_reference}, {"_id": 0})
        if session:
            return session["document_id"], session
        return parse_order_document_id(order_reference), None

    async def _expected_amount(self, document_id: str, session: Optional[Dict[str, Any]]) -> Optional[int]:
        if session and session.get("amount") is not None:
            return int(session["amount"])
        document = await find_by_id(document_id)
        return int(document["price"]) if document else None

    async def _handle_event(self, event_type: str, ctx: Dict[str, Any]) -> Dict[str, Any]:
        order_reference = ctx["order_reference"]
        document_id, session = await self.resolve_order(order_reference)
        if not document_id:
            logger.warning(f"Could not resolve document for order reference {order_reference}")
            return {"document_id": None, "outcome": "unresolved"}

        if event_type == SALE_APPROVED:
            expected = await self._expected_amount(document_id, session)
            paid = _coerce_amount(ctx["amount"])
            if expected is not None and (paid is None or paid < expected):
                logger.error(
                    "PAYMENT_AMOUNT_MISMATCH document_id=%s order_reference=%s paid=%s expected=%s",
                    document_id, order_reference, ctx["amount"], expected,
                )
                await create_audit_log(
                    action=AuditAction.PAYMENT_NEEDS_ATTENTION,
                    actor_type="gateway",
                    resource_id=document_id,
                    metadata={
                        "order_reference": order_reference,
                        "payment_id": ctx["payment_id"],
                        "paid_amount": ctx["amount"],
                        "expected_amount": expected,
                    },
                )
                return {"document_id": document_id, "outcome": "amount_mismatch"}

            result = await self.reconciler.mark_paid(document_id, channel="webhook", order_id=order_reference)
            return {"document_id": document_id, "outcome": result.outcome.value}

        if event_type == VOID_APPROVED:
            # No edge leads back from paid; a voided sale needs a human
            logger.warning(
                "PAYMENT_VOIDED document_id=%s order_reference=%s payment_id=%s",
                document_id, order_reference, ctx["payment_id"],
            )
            await create_audit_log(
                action=AuditAction.PAYMENT_REVERSAL_RECEIVED,
                actor_type="gateway",
                resource_id=document_id,
                metadata={"order_reference": order_reference, "payment_id": ctx["payment_id"]},
            )
            return {"document_id": document_id, "outcome": "reversal_logged"}

        logger.info(
            "Gateway event %s for document %s requires no status change", event_type, document_id,
        )
        return {"document_id": document_id, "outcome": "ignored"}
