"""
Download Service
Delivers the final artifact and records the paid -> downloaded transition.

Flow: PAID -> render PDF -> DOWNLOADED
- The artifact is produced before the status write; a rendering failure
  leaves the document at PAID so the client can retry
- DOWNLOADED documents re-render with no status write (re-download)
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any

from models import AuditAction
from services.document_workflow import DocumentStatus, TransitionType, InvalidTransition, is_released
from services.document_store import update_status, find_by_id, increment_download_count, StatusConflict
from services.document_renderer import document_renderer, generate_document_filename, ArtifactGenerationError
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class ArtifactDeliveryError(Exception):
    """The artifact could not be produced; status is unchanged."""

    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        super().__init__(f"Artifact delivery failed for {document_id}: {reason}")


@dataclass
class DownloadResult:
    document: Dict[str, Any]
    content: bytes
    filename: str
    first_download: bool = False
    media_type: str = "application/pdf"


class DownloadFinalizer:
    """
    Service for final artifact delivery.
    """

    def __init__(self, renderer=None):
        self.renderer = renderer or document_renderer

    async def finalize(self, document: Dict[str, Any]) -> DownloadResult:
        """Raises InvalidTransition (not yet paid) or ArtifactDeliveryError."""
        current = DocumentStatus(document["status"])
        if not is_released(current):
            raise InvalidTransition(
                current, DocumentStatus.DOWNLOADED,
                f"Document {document['id']} is not paid; artifact cannot be released",
            )

        try:
            content = await asyncio.to_thread(self.renderer.render, document)
        except ArtifactGenerationError as e:
            raise ArtifactDeliveryError(document["id"], str(e)) from e

        first_download = False
        if current == DocumentStatus.PAID:
            try:
                document = await update_status(
                    document["id"],
                    DocumentStatus.PAID,
                    DocumentStatus.DOWNLOADED,
                    extra_fields={"downloaded_at": datetime.now(timezone.utc)},
                    triggered_by_type="customer",
                    transition_type=TransitionType.CUSTOMER_ACTION,
                    reason="Artifact delivered",
                )
                first_download = True
            except StatusConflict:
                # Concurrent download already recorded the transition
                logger.info(f"Document {document['id']} already marked downloaded")
                document = await find_by_id(document["id"]) or document

        await increment_download_count(document["id"])
        if first_download:
            await create_audit_log(
                action=AuditAction.DOCUMENT_DOWNLOADED,
                actor_type="customer",
                resource_id=document["id"],
                metadata={"token": document["token"]},
            )

        logger.info(
            "DOCUMENT_DELIVERED document_id=%s first_download=%s bytes=%s",
            document["id"], first_download, len(content),
        )
        return DownloadResult(
            document=document,
            content=content,
            filename=generate_document_filename(document),
            first_download=first_download,
        )


download_finalizer = DownloadFinalizer()
