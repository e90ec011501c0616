"""
Review Service - professional-side transitions.
requested -> in_lawyer_review -> in_client_review
"""
import logging
from typing import Dict, Optional

from services.document_workflow import DocumentStatus, TransitionType
from services.document_store import update_status

logger = logging.getLogger(__name__)


async def begin_review(document_id: str) -> Dict:
    return await update_status(
        document_id,
        DocumentStatus.REQUESTED,
        DocumentStatus.IN_LAWYER_REVIEW,
        triggered_by_type="professional",
        transition_type=TransitionType.PROFESSIONAL,
        reason="Professional review started",
    )


async def complete_review(document_id: str, content: Optional[str] = None) -> Dict:
    """Hand the document to the client, optionally with revised content."""
    extra = {"content": content} if content and content.strip() else None
    document = await update_status(
        document_id,
        DocumentStatus.IN_LAWYER_REVIEW,
        DocumentStatus.IN_CLIENT_REVIEW,
        extra_fields=extra,
        triggered_by_type="professional",
        transition_type=TransitionType.PROFESSIONAL,
        reason="Professional review completed",
        metadata={"content_revised": bool(extra)},
    )
    logger.info(f"Document {document_id} ready for client review")
    return document
