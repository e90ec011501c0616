"""
Payment Routes - backend gateway configuration and one-shot status lookup.

POST /api/payments/config - checkout configuration for one order (credentials and price stay server-side)
POST /api/payments/status - {orderId} -> {paymentApproved, paymentStatus}
"""
from fastapi import APIRouter, Request, Depends, status
import logging

from middleware import get_payment_reconciler
from models import PaymentConfigRequest, PaymentStatusRequest
from services.document_store import find_by_id
from services.document_workflow import DocumentStatus, InvalidTransition
from services.payment_config_service import build_payment_config, ConfigurationError
from services.payment_gateway import parse_order_document_id
from utils.api_errors import api_error, translate_domain_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/config")
async def create_payment_config(request: Request, payload: PaymentConfigRequest):
    """
    Signed checkout configuration for one order.
    Amount, document type and token come from the document the order refers to;
    the request body cannot lower the price.
    """
    document_id = parse_order_document_id(payload.orderId)
    document = await find_by_id(document_id) if document_id else None
    if not document:
        raise api_error(status.HTTP_404_NOT_FOUND, "ORDER_NOT_FOUND", "Order does not refer to a known document")
    if document["status"] != DocumentStatus.IN_CLIENT_REVIEW.value:
        raise translate_domain_error(InvalidTransition(document["status"], DocumentStatus.PAID))
    if payload.amount is not None and payload.amount != document["price"]:
        logger.warning(
            "Payment config amount override ignored order_id=%s requested=%s price=%s",
            payload.orderId, payload.amount, document["price"],
        )

    try:
        config = build_payment_config(
            order_id=payload.orderId,
            amount=document["price"],
            document_type=document["document_type"],
            token=document["token"],
            origin=request.headers.get("origin"),
        )
    except ValueError as e:
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", str(e))
    except ConfigurationError as e:
        logger.error(f"Payment configuration failed for {payload.orderId}: {e}")
        raise translate_domain_error(e)
    return config


@router.post("/status")
async def check_payment_status(payload: PaymentStatusRequest, reconciler=Depends(get_payment_reconciler)):
    """Single gateway lookup; never changes document status."""
    if not payload.orderId.strip():
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", "orderId is required")

    result = await reconciler.gateway.lookup_payment_status(payload.orderId)
    logger.info("Payment status lookup order_id=%s approved=%s", payload.orderId, result.approved)
    return {
        "success": True,
        "paymentApproved": result.approved,
        "paymentStatus": result.status,
    }
