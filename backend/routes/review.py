"""
Review Routes - professional-side transitions (shared-key protected).

POST /api/review/documents/{document_id}/start     - requested -> in_lawyer_review
POST /api/review/documents/{document_id}/complete  - in_lawyer_review -> in_client_review
GET  /api/review/documents/{document_id}/history   - transitions + audit entries
"""
from fastapi import APIRouter, Depends
from typing import Optional
import logging

from middleware import require_review_key
from models import CompleteReviewPayload
from services.document_workflow import InvalidTransition, get_status_progress
from services.document_store import DocumentNotFound, StatusConflict, find_by_id, get_document_timeline
from services.review_service import begin_review, complete_review
from utils.api_errors import document_not_found, translate_domain_error
from utils.audit import get_audit_trail

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/review",
    tags=["review"],
    dependencies=[Depends(require_review_key)],
)


def _summary(document):
    return {
        "id": document["id"],
        "token": document["token"],
        "status": document["status"],
        "progress": get_status_progress(document["status"]),
        "user_observations": document.get("user_observations"),
    }


@router.post("/documents/{document_id}/start")
async def start_review(document_id: str):
    try:
        document = await begin_review(document_id)
    except (InvalidTransition, StatusConflict, DocumentNotFound) as e:
        raise translate_domain_error(e)
    return {"success": True, "document": _summary(document)}


@router.post("/documents/{document_id}/complete")
async def finish_review(document_id: str, payload: Optional[CompleteReviewPayload] = None):
    content = payload.content if payload else None
    try:
        document = await complete_review(document_id, content=content)
    except (InvalidTransition, StatusConflict, DocumentNotFound) as e:
        raise translate_domain_error(e)
    return {"success": True, "document": _summary(document)}


@router.get("/documents/{document_id}/history")
async def document_history(document_id: str):
    document = await find_by_id(document_id)
    if not document:
        raise document_not_found()
    return {
        "document": _summary(document),
        "transitions": await get_document_timeline(document_id),
        "audit": await get_audit_trail(document_id),
    }
