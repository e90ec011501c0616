"""
Shared job runner for scheduled background jobs.
Used by server (scheduler).
Each run_* returns a dict with "message" (and optionally "count").
"""
import os
import logging
from datetime import datetime, timezone, timedelta

logger = logging.getLogger(__name__)


def _session_ttl() -> timedelta:
    return timedelta(hours=float(os.getenv("PAYMENT_SESSION_TTL_HOURS", "24")))


async def run_pending_payment_reconciliation(reconciler=None):
    """
    Catch payments whose client left before the polling window closed.

    Open sessions younger than the TTL get one gateway lookup; approvals go
    through the same conditional paid write as every other channel. Older
    open sessions are marked expired.
    """
    try:
        from database import database
        from models import PaymentSessionStatus
        from services.document_workflow import DocumentStatus, is_released
        from services.payment_reconciler import PaymentReconciler, ReconciliationOutcome

        reconciler = reconciler or PaymentReconciler()
        db = database.get_db()
        now = datetime.now(timezone.utc)
        cutoff = now - _session_ttl()

        expired = await db.payment_sessions.update_many(
            {"status": PaymentSessionStatus.OPEN.value, "created_at": {"$lt": cutoff}},
            {"$set": {"status": PaymentSessionStatus.EXPIRED.value, "updated_at": now}},
        )

        sessions = await db.payment_sessions.find(
            {"status": PaymentSessionStatus.OPEN.value, "created_at": {"$gte": cutoff}},
            {"_id": 0},
        ).sort("created_at", 1).to_list(length=200)

        checked = 0
        confirmed = 0
        for session in sessions:
            document = await db.document_tokens.find_one(
                {"id": session["document_id"]}, {"_id": 0, "status": 1},
            )
            if not document:
                continue
            if is_released(document["status"]):
                # Paid through another session or channel
                await db.payment_sessions.update_one(
                    {"order_id": session["order_id"]},
                    {"$set": {"status": PaymentSessionStatus.EXPIRED.value, "updated_at": now}},
                )
                continue
            if document["status"] != DocumentStatus.IN_CLIENT_REVIEW.value:
                continue

            checked += 1
            if not await reconciler.check_once(session["order_id"], session.get("provider_reference")):
                continue
            result = await reconciler.mark_paid(session["document_id"], channel="sweep", order_id=session["order_id"])
            if result.outcome == ReconciliationOutcome.PAID:
                confirmed += 1

        expired_count = expired.modified_count
        if confirmed or expired_count:
            logger.info(
                f"Pending payment reconciliation: {checked} checked, {confirmed} confirmed, {expired_count} expired"
            )
        return {
            "message": f"Pending payments: {checked} checked, {confirmed} confirmed, {expired_count} expired",
            "count": confirmed,
        }
    except Exception as e:
        logger.error(f"Pending payment reconciliation job failed: {e}")
        raise
