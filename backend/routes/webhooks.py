"""Webhook Routes - payment gateway notifications.

POST /api/webhooks/bold - signed Bold payment notification
- Signature verification (x-bold-signature)
- Idempotency (via gateway_events collection)
- Audit logging for reversals and failures
"""
from fastapi import APIRouter, HTTPException, Request, Header, Depends, status
import logging

from middleware import get_gateway_webhook_service
from services.gateway_webhook_service import INVALID_SIGNATURE, NOT_CONFIGURED, INVALID_PAYLOAD

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])

_REJECTION_STATUS = {
    INVALID_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    NOT_CONFIGURED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    INVALID_PAYLOAD: status.HTTP_400_BAD_REQUEST,
}


@router.post("/api/webhooks/bold")
async def bold_webhook(
    request: Request,
    bold_signature: str = Header(None, alias="x-bold-signature"),
    webhook_service=Depends(get_gateway_webhook_service),
):
    """Handle Bold payment notifications at /api/webhooks/bold"""
    payload = await request.body()

    success, message, details = await webhook_service.process_webhook(
        payload=payload,
        signature=bold_signature or "",
    )

    if success:
        return {"status": "received", "message": message, "details": details}

    logger.error(f"Gateway webhook rejected: {message}")
    raise HTTPException(
        status_code=_REJECTION_STATUS.get(message, status.HTTP_400_BAD_REQUEST),
        detail={"error_code": "WEBHOOK_REJECTED", "message": message},
    )
