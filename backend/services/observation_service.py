"""
Observation Service
Client change requests: in_client_review -> in_lawyer_review with the
observation text stamped onto the record.
"""
import logging
from datetime import datetime, timezone
from typing import Dict

from models import AuditAction
from services.document_workflow import (
    DocumentStatus, TransitionType, InvalidTransition, EmptyObservation,
)
from services.document_store import update_status, find_by_id, StatusConflict, DocumentNotFound
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


async def submit_observations(document_id: str, text: str) -> Dict:
    """
    Send a document back to the professional with the client's observations.

    Raises EmptyObservation, InvalidTransition or DocumentNotFound.
    Returns the updated record.
    """
    if not (text or "").strip():
        raise EmptyObservation("Observations cannot be empty")

    try:
        document = await update_status(
            document_id,
            DocumentStatus.IN_CLIENT_REVIEW,
            DocumentStatus.IN_LAWYER_REVIEW,
            extra_fields={
                "user_observations": text,
                "user_observation_date": datetime.now(timezone.utc),
            },
            triggered_by_type="customer",
            transition_type=TransitionType.CUSTOMER_ACTION,
            reason="Client requested changes",
        )
    except StatusConflict as e:
        latest = await find_by_id(document_id)
        if not latest:
            raise DocumentNotFound(document_id) from e
        # Double submit of the same observations
        if latest["status"] == DocumentStatus.IN_LAWYER_REVIEW.value and latest.get("user_observations") == text:
            logger.info(f"Observations for {document_id} already recorded")
            return latest
        raise InvalidTransition(latest["status"], DocumentStatus.IN_LAWYER_REVIEW) from e

    await create_audit_log(
        action=AuditAction.DOCUMENT_OBSERVATIONS_SUBMITTED,
        actor_type="customer",
        resource_id=document_id,
        metadata={"length": len(text)},
    )
    return document
