"""Payment Reconciler - drives a document to `paid` exactly once.

Confirmation can arrive through independent, racing channels:
1. Redirect: the gateway sends the client back with an explicit approved flag
2. Polling: a bounded loop asks the gateway for the order's status
3. Webhook / sweep: out-of-band confirmations (see gateway_webhook_service, job_runner)

Key Principles:
- Every channel ends in mark_paid(), a single conditional in_client_review -> paid write
- The store's compare-and-swap is the only arbiter; no in-memory "handled" flags
- Losing the race (StatusConflict) is success: the document is already paid
- Polling is bounded by attempts AND wall-clock time, enforced independently
- Polling loops are tasks owned by the reconciler instance and cancellable
- Polling re-reads the document each round and ends once it is settled
- Redirects only confirm orders recorded in payment_sessions
"""
import os
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Mapping

from database import database
from models import AuditAction, PaymentSessionStatus
from services.document_workflow import DocumentStatus, TransitionType, is_released
from services.document_store import (
    update_status, find_by_id, find_by_token, StatusConflict, DocumentNotFound,
)
from services.payment_gateway import get_payment_gateway, parse_order_document_id
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollingPolicy:
    """Polling bounds. The numbers are product choices; the dual bound is not."""
    interval_seconds: float = 3.0
    max_attempts: int = 40
    max_duration_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> "PollingPolicy":
        return cls(
            interval_seconds=float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", "3")),
            max_attempts=int(os.getenv("PAYMENT_POLL_MAX_ATTEMPTS", "40")),
            max_duration_seconds=float(os.getenv("PAYMENT_POLL_MAX_SECONDS", "120")),
        )


class ReconciliationOutcome(str, Enum):
    PAID = "paid"                       # this call committed the paid write
    ALREADY_PAID = "already_paid"       # another channel won, or already downloaded
    PENDING = "pending"                 # no approval yet; payment may still land
    CANCELLED = "cancelled"             # polling torn down by the caller
    NOT_FOUND = "not_found"
    NEEDS_ATTENTION = "needs_attention"  # approved, but document no longer awaits payment


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    document: Optional[Dict[str, Any]] = None
    channel: Optional[str] = None
    attempts: int = 0

    @property
    def payment_completed(self) -> bool:
        return self.outcome in (ReconciliationOutcome.PAID, ReconciliationOutcome.ALREADY_PAID)


class PollingHandle:
    """Handle on one running polling loop."""

    def __init__(self, task: asyncio.Task, document_id: str, order_id: str):
        self.task = task
        self.document_id = document_id
        self.order_id = order_id

    def cancel(self) -> bool:
        return self.task.cancel()

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> ReconciliationResult:
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.CANCELLED,
                    channel="polling",
                )
            raise


class PaymentReconciler:
    """Reconciles gateway confirmations into a single authoritative paid write."""

    def __init__(self, gateway=None, policy: Optional[PollingPolicy] = None):
        self.gateway = gateway or get_payment_gateway()
        self.policy = policy or PollingPolicy.from_env()
        self._handles: Dict[str, PollingHandle] = {}

    # =========================================================================
    # Authoritative write
    # =========================================================================

    async def mark_paid(
        self,
        document_id: str,
        channel: str,
        order_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """Conditional in_client_review -> paid. Safe to call from any channel, any number of times."""
        try:
            document = await update_status(
                document_id,
                DocumentStatus.IN_CLIENT_REVIEW,
                DocumentStatus.PAID,
                extra_fields={
                    "paid_at": datetime.now(timezone.utc),
                    "payment_channel": channel,
                    "payment_order_id": order_id,
                },
                triggered_by_type=channel,
                transition_type=TransitionType.SYSTEM,
                reason="Payment confirmed",
                metadata={"order_id": order_id} if order_id else None,
            )
        except DocumentNotFound:
            logger.warning("PAYMENT_CONFIRMATION_UNKNOWN_DOCUMENT document_id=%s channel=%s", document_id, channel)
            return ReconciliationResult(outcome=ReconciliationOutcome.NOT_FOUND, channel=channel)
        except StatusConflict as e:
            return await self._resolve_conflict(document_id, channel, order_id, e)

        logger.info(
            "PAYMENT_MARKED_PAID document_id=%s channel=%s order_id=%s",
            document_id, channel, order_id,
        )
        self._stop_document_polling(document_id)
        await self._close_session(order_id, PaymentSessionStatus.APPROVED)
        await create_audit_log(
            action=AuditAction.PAYMENT_CONFIRMED,
            actor_type=channel,
            resource_id=document_id,
            metadata={"order_id": order_id, "channel": channel},
        )
        return ReconciliationResult(outcome=ReconciliationOutcome.PAID, document=document, channel=channel)

    async def _resolve_conflict(
        self,
        document_id: str,
        channel: str,
        order_id: Optional[str],
        conflict: StatusConflict,
    ) -> ReconciliationResult:
        document = await find_by_id(document_id)
        if document and is_released(document["status"]):
            logger.info(
                "PAYMENT_ALREADY_RECORDED document_id=%s channel=%s status=%s",
                document_id, channel, document["status"],
            )
            await self._close_session(order_id, PaymentSessionStatus.APPROVED)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PAID, document=document, channel=channel,
            )

        logger.error(
            "PAYMENT_NEEDS_ATTENTION document_id=%s channel=%s order_id=%s status=%s",
            document_id, channel, order_id, conflict.actual,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_NEEDS_ATTENTION,
            actor_type=channel,
            resource_id=document_id,
            metadata={"order_id": order_id, "status": conflict.actual},
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.NEEDS_ATTENTION, document=document, channel=channel,
        )

    async def _close_session(self, order_id: Optional[str], status: PaymentSessionStatus) -> None:
        if not order_id:
            return
        db = database.get_db()
        await db.payment_sessions.update_one(
            {"order_id": order_id},
            {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}},
        )

    # =========================================================================
    # Redirect-confirmation channel
    # =========================================================================

    async def confirm_from_redirect(self, token: str, params: Mapping[str, str]) -> ReconciliationResult:
        """Handle the gateway's return redirect for a document token."""
        document = await find_by_token(token)
        if not document:
            return ReconciliationResult(outcome=ReconciliationOutcome.NOT_FOUND, channel="redirect")

        confirmation = self.gateway.parse_redirect(params)
        if not confirmation.approved:
            if is_released(document["status"]):
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.ALREADY_PAID, document=document, channel="redirect",
                )
            return ReconciliationResult(outcome=ReconciliationOutcome.PENDING, document=document, channel="redirect")

        if parse_order_document_id(confirmation.order_id) != document["id"]:
            logger.warning(
                "Redirect order %s does not belong to document %s; ignoring",
                confirmation.order_id, document["id"],
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.PENDING, document=document, channel="redirect")

        # Only orders this service actually opened can be confirmed by redirect
        db = database.get_db()
        session = await db.payment_sessions.find_one(
            {"order_id": confirmation.order_id, "document_id": document["id"]}, {"_id": 0},
        )
        if not session:
            logger.warning(
                "REDIRECT_UNKNOWN_ORDER document_id=%s order_id=%s; ignoring",
                document["id"], confirmation.order_id,
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.PENDING, document=document, channel="redirect")

        return await self.mark_paid(document["id"], channel="redirect", order_id=confirmation.order_id)

    # =========================================================================
    # Polling channel
    # =========================================================================

    async def check_once(self, order_id: str, provider_reference: Optional[str] = None) -> bool:
        """One status lookup. Any failure means "not yet approved"."""
        try:
            result = await self.gateway.lookup_payment_status(order_id, provider_reference)
        except Exception as e:
            logger.warning(f"Payment status check failed for {order_id}: {e}")
            return False
        return bool(result and result.approved)

    async def poll(
        self,
        document_id: str,
        order_id: str,
        provider_reference: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Poll the gateway until approval, attempt exhaustion or the wall-clock ceiling.

        Each lookup is bounded by the time left in the window, so a slow request
        cannot stretch the overall window.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.max_duration_seconds
        attempts = 0

        while attempts < self.policy.max_attempts:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.policy.interval_seconds, remaining))

            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            # Another channel may have settled (or moved) the document meanwhile
            document = await find_by_id(document_id)
            if not document:
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.NOT_FOUND, channel="polling", attempts=attempts,
                )
            if is_released(document["status"]):
                logger.info("Payment polling for %s stopped: document already %s", order_id, document["status"])
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.ALREADY_PAID, document=document,
                    channel="polling", attempts=attempts,
                )
            if document["status"] != DocumentStatus.IN_CLIENT_REVIEW.value:
                logger.info("Payment polling for %s stopped: document is %s", order_id, document["status"])
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.PENDING, document=document,
                    channel="polling", attempts=attempts,
                )

            attempts += 1
            try:
                approved = await asyncio.wait_for(
                    self.check_once(order_id, provider_reference), timeout=remaining,
                )
            except asyncio.TimeoutError:
                logger.info("Payment status lookup for %s hit the polling ceiling", order_id)
                break

            if approved:
                result = await self.mark_paid(document_id, channel="polling", order_id=order_id)
                result.attempts = attempts
                return result

        logger.info(
            "PAYMENT_POLLING_EXHAUSTED document_id=%s order_id=%s attempts=%s",
            document_id, order_id, attempts,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.PENDING,
            document=await find_by_id(document_id),
            channel="polling",
            attempts=attempts,
        )

    def start_polling(
        self,
        document_id: str,
        order_id: str,
        provider_reference: Optional[str] = None,
    ) -> PollingHandle:
        """Start (or return the live) polling loop for an order."""
        existing = self._handles.get(order_id)
        if existing and not existing.done():
            return existing

        task = asyncio.create_task(
            self.poll(document_id, order_id, provider_reference),
            name=f"payment-poll-{order_id}",
        )
        handle = PollingHandle(task, document_id, order_id)
        self._handles[order_id] = handle

        def _forget(_task, order_id=order_id, handle=handle):
            if self._handles.get(order_id) is handle:
                del self._handles[order_id]

        task.add_done_callback(_forget)
        logger.info("Payment polling started document_id=%s order_id=%s", document_id, order_id)
        return handle

    def stop_polling(self, order_id: str) -> bool:
        """Tear down a polling loop (client left the page). Returns False if none was running."""
        handle = self._handles.get(order_id)
        if not handle or handle.done():
            return False
        handle.cancel()
        logger.info("Payment polling cancelled order_id=%s", order_id)
        return True

    def _stop_document_polling(self, document_id: str) -> None:
        """Cancel the document's other live loops once it is settled."""
        current = asyncio.current_task()
        for handle in list(self._handles.values()):
            if handle.document_id == document_id and handle.task is not current and not handle.done():
                handle.cancel()
                logger.info("Payment polling cancelled order_id=%s (document settled)", handle.order_id)

    def is_polling(self, document_id: str) -> bool:
        return any(h.document_id == document_id and not h.done() for h in self._handles.values())

    async def shutdown(self) -> None:
        """Cancel every live polling loop and wait for them to unwind."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        self._handles.clear()
