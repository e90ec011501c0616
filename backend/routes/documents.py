"""
Document Routes - client-facing lifecycle endpoints, addressed by token.

POST   /api/documents                                  - create a document request
GET    /api/documents/{token}                          - client view + progress
POST   /api/documents/{token}/observations             - request changes
POST   /api/documents/{token}/payment-session          - open checkout (or settle a free document)
DELETE /api/documents/{token}/payment-session/{order}  - stop polling (client left)
GET    /api/documents/{token}/payment-return           - gateway redirect confirmation
GET    /api/documents/{token}/payment-status           - paid / still pending
GET    /api/documents/{token}/download                 - final PDF
"""
from fastapi import APIRouter, Request, Depends, status
from fastapi.responses import Response
from typing import Dict, Any, Optional
import logging

from database import database
from middleware import get_payment_reconciler, get_payment_session_service
from models import (
    AuditAction, DocumentRequestCreate, ObservationPayload, DocumentView, PaymentSessionStatus,
)
from services.document_workflow import (
    DocumentStatus, InvalidTransition, EmptyObservation, get_status_progress, is_released,
)
from services.document_store import create_document_request, find_by_token, DocumentNotFound, StatusConflict
from services.observation_service import submit_observations
from services.payment_session_service import PaymentNotRequired
from services.payment_reconciler import ReconciliationOutcome
from services.payment_config_service import ConfigurationError
from services.payment_gateway import GatewayUnavailable, parse_order_document_id
from services.download_service import download_finalizer, ArtifactDeliveryError
from utils.api_errors import api_error, document_not_found, translate_domain_error
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/documents", tags=["documents"])


async def _load(token: str) -> Dict[str, Any]:
    document = await find_by_token(token)
    if not document:
        raise document_not_found()
    return document


def _client_view(document: Dict[str, Any], reconciler=None) -> Dict[str, Any]:
    view = DocumentView(
        **document,
        progress=get_status_progress(document["status"]),
        payment_completed=is_released(document["status"]),
    ).model_dump()
    view["payment_in_progress"] = bool(reconciler and reconciler.is_polling(document["id"]))
    return view


async def _latest_open_session(document_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    sessions = await db.payment_sessions.find(
        {"document_id": document_id, "status": PaymentSessionStatus.OPEN.value},
        {"_id": 0},
    ).sort("created_at", -1).limit(1).to_list(length=1)
    return sessions[0] if sessions else None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_document(request: DocumentRequestCreate):
    """
    Create a document request (REQUESTED status).
    Returns the shareable token the client uses for every later step.
    """
    try:
        document = await create_document_request(
            document_type=request.document_type,
            document_content=request.document_content,
            user_email=request.user_email,
            user_name=request.user_name,
            price=request.price,
            sla_hours=request.sla_hours,
        )
    except ValueError as e:
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", str(e))

    await create_audit_log(
        action=AuditAction.DOCUMENT_REQUESTED,
        actor_type="customer",
        resource_id=document["id"],
        metadata={"document_type": document["document_type"], "price": document["price"]},
    )
    return {
        "success": True,
        "token": document["token"],
        "status": document["status"],
        "price": document["price"],
        "sla_deadline": document["sla_deadline"],
    }


@router.get("/{token}")
async def get_document(token: str, reconciler=Depends(get_payment_reconciler)):
    document = await _load(token)
    return _client_view(document, reconciler)


@router.post("/{token}/observations")
async def post_observations(token: str, payload: ObservationPayload):
    """Send the document back to the professional with the client's changes."""
    document = await _load(token)
    try:
        updated = await submit_observations(document["id"], payload.observations)
    except (EmptyObservation, InvalidTransition, DocumentNotFound) as e:
        raise translate_domain_error(e)
    return {"success": True, "document": _client_view(updated)}


@router.post("/{token}/payment-session")
async def open_payment_session(
    token: str,
    request: Request,
    sessions=Depends(get_payment_session_service),
    reconciler=Depends(get_payment_reconciler),
):
    """
    Start payment for a document under client review.

    Free documents are settled immediately and never reach the gateway.
    Priced documents get a fresh checkout session and a polling loop.
    """
    document = await _load(token)
    origin = request.headers.get("origin")

    try:
        handle = await sessions.open(document, origin=origin)
    except PaymentNotRequired:
        try:
            settled = await sessions.settle_free_document(document)
        except InvalidTransition as e:
            raise translate_domain_error(e)
        return {"payment_required": False, "document": _client_view(settled, reconciler)}
    except (InvalidTransition, GatewayUnavailable, ConfigurationError) as e:
        logger.warning(f"Payment session not opened for {document['id']}: {e}")
        raise translate_domain_error(e)

    reconciler.start_polling(handle.document_id, handle.order_id, handle.provider_reference)
    return {
        "payment_required": True,
        "order_id": handle.order_id,
        "provider": handle.provider,
        "checkout": handle.checkout,
    }


@router.delete("/{token}/payment-session/{order_id}")
async def stop_payment_polling(token: str, order_id: str, reconciler=Depends(get_payment_reconciler)):
    """The client left the payment page; tear down its polling loop."""
    document = await _load(token)
    if parse_order_document_id(order_id) != document["id"]:
        raise api_error(status.HTTP_404_NOT_FOUND, "ORDER_NOT_FOUND", "Order does not belong to this document")
    return {"stopped": reconciler.stop_polling(order_id)}


@router.get("/{token}/payment-return")
async def payment_return(token: str, request: Request, reconciler=Depends(get_payment_reconciler)):
    """
    Gateway redirect back to the application.
    An explicit approval settles immediately; otherwise polling on the latest
    open session carries on.
    """
    result = await reconciler.confirm_from_redirect(token, request.query_params)
    if result.document is None:
        raise document_not_found()

    document = result.document
    if result.outcome == ReconciliationOutcome.PENDING and document["status"] == DocumentStatus.IN_CLIENT_REVIEW.value:
        session = await _latest_open_session(document["id"])
        if session:
            reconciler.start_polling(document["id"], session["order_id"], session.get("provider_reference"))

    return {
        "outcome": result.outcome.value,
        "payment_completed": is_released(document["status"]),
        "document": _client_view(document, reconciler),
    }


@router.get("/{token}/payment-status")
async def payment_status(token: str, reconciler=Depends(get_payment_reconciler)):
    document = await _load(token)
    completed = is_released(document["status"])
    polling = reconciler.is_polling(document["id"])
    message = None
    if not completed and document["status"] == DocumentStatus.IN_CLIENT_REVIEW.value and not polling:
        message = "Payment is still being confirmed. It can take a few minutes; refresh this page to check again."
    return {
        "status": document["status"],
        "payment_completed": completed,
        "payment_in_progress": polling,
        "message": message,
    }


@router.get("/{token}/download")
async def download_document(token: str):
    document = await _load(token)
    try:
        result = await download_finalizer.finalize(document)
    except (InvalidTransition, ArtifactDeliveryError, StatusConflict) as e:
        if isinstance(e, ArtifactDeliveryError):
            logger.error(str(e))
        raise translate_domain_error(e)

    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )
