"""
Document Store - persistence layer for Document Records.
Every status write is a conditional update (compare-and-swap on `status`)
validated against the transition table in services.document_workflow.

This is the ONLY module that writes `document_tokens.status`.
"""
import os
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, List, Any
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from database import database
from services.document_workflow import (
    DocumentStatus, TransitionType,
    assert_transition, requires_free_document,
)

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_PRICE = int(os.getenv("DEFAULT_DOCUMENT_PRICE", "50000"))
DEFAULT_SLA_HOURS = 4
TOKEN_LENGTH = 12


class DocumentNotFound(LookupError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class StatusConflict(Exception):
    """The stored status no longer matches the expected status (lost CAS race)."""

    def __init__(self, document_id: str, expected: DocumentStatus, actual: Optional[str]):
        self.document_id = document_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Status conflict on {document_id}: expected {expected.value}, found {actual}"
        )


def normalize_token(token: Optional[str]) -> str:
    """Tokens are case-insensitive; the store keeps them uppercase."""
    return (token or "").strip().upper()


def generate_document_id() -> str:
    return uuid.uuid4().hex


def generate_document_token() -> str:
    """Generate a human-shareable token: 12 uppercase hex characters"""
    return uuid.uuid4().hex[:TOKEN_LENGTH].upper()


def generate_execution_id() -> str:
    """Generate unique transition record ID: DSH-XXXXXX"""
    return f"DSH-{uuid.uuid4().hex[:6].upper()}"


async def create_document_request(
    document_type: str,
    document_content: str,
    user_email: str,
    user_name: str,
    price: Optional[int] = None,
    sla_hours: Optional[int] = None,
) -> Dict:
    """
    Create a new Document Record in REQUESTED status.
    Returns the created record.
    """
    missing = [
        name for name, value in (
            ("document_content", document_content),
            ("document_type", document_type),
            ("user_email", user_email),
            ("user_name", user_name),
        ) if not (value or "").strip()
    ]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    if price is not None and price < 0:
        raise ValueError("price must be a non-negative integer")

    db = database.get_db()
    now = datetime.now(timezone.utc)
    hours = sla_hours or DEFAULT_SLA_HOURS

    record = {
        "id": generate_document_id(),
        "token": generate_document_token(),
        "document_type": document_type.strip(),
        "content": document_content,
        "user_email": user_email,
        "user_name": user_name,
        "price": DEFAULT_DOCUMENT_PRICE if price is None else price,
        "status": DocumentStatus.REQUESTED.value,
        "sla_hours": hours,
        "sla_deadline": now + timedelta(hours=hours),
        "user_observations": None,
        "user_observation_date": None,
        "created_at": now,
        "updated_at": now,
    }

    # Token collisions are astronomically rare; retry once on the unique index
    for attempt in range(2):
        try:
            await db.document_tokens.insert_one(record)
            break
        except DuplicateKeyError:
            if attempt:
                raise
            record["token"] = generate_document_token()

    await record_transition(
        document_id=record["id"],
        previous_state=None,
        new_state=DocumentStatus.REQUESTED.value,
        transition_type=TransitionType.SYSTEM.value,
        triggered_by_type="authoring",
    )

    logger.info(f"Document requested: {record['id']} token={record['token']} price={record['price']}")

    record.pop("_id", None)
    return record


async def find_by_token(token: str) -> Optional[Dict]:
    """Get a Document Record by its shareable token (case-insensitive)."""
    normalized = normalize_token(token)
    if not normalized:
        return None
    db = database.get_db()
    return await db.document_tokens.find_one({"token": normalized}, {"_id": 0})


async def find_by_id(document_id: str) -> Optional[Dict]:
    db = database.get_db()
    return await db.document_tokens.find_one({"id": document_id}, {"_id": 0})


async def update_status(
    document_id: str,
    expected_status: Optional[DocumentStatus],
    new_status: DocumentStatus,
    extra_fields: Optional[Dict[str, Any]] = None,
    triggered_by_type: str = "system",
    transition_type: TransitionType = TransitionType.SYSTEM,
    reason: Optional[str] = None,
    metadata: Optional[Dict] = None,
) -> Dict:
    """
    Conditionally move a document to `new_status`.

    With `expected_status` the write only lands if the stored status still
    matches it. Without it, the current status is read first and the write is
    conditioned on that value (emulated compare-and-swap).

    Raises InvalidTransition, DocumentNotFound or StatusConflict.
    Returns the updated record.
    """
    db = database.get_db()
    new_status = DocumentStatus(new_status)

    if expected_status is None:
        current = await find_by_id(document_id)
        if not current:
            raise DocumentNotFound(document_id)
        expected_status = DocumentStatus(current["status"])
        assert_transition(expected_status, new_status, current.get("price"))
    else:
        expected_status = DocumentStatus(expected_status)
        # Price is checked inside the conditional filter for free-only edges
        if not requires_free_document(expected_status, new_status):
            assert_transition(expected_status, new_status)

    query = {"id": document_id, "status": expected_status.value}
    if requires_free_document(expected_status, new_status):
        query["price"] = 0

    update_fields = dict(extra_fields or {})
    update_fields["status"] = new_status.value
    update_fields["updated_at"] = datetime.now(timezone.utc)

    updated = await db.document_tokens.find_one_and_update(
        query,
        {"$set": update_fields},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )

    if updated is None:
        current = await find_by_id(document_id)
        if not current:
            raise DocumentNotFound(document_id)
        if current.get("status") == expected_status.value:
            # Status matched, so the price filter rejected the free-only edge
            assert_transition(expected_status, new_status, current.get("price"))
        raise StatusConflict(document_id, expected_status, current.get("status"))

    await record_transition(
        document_id=document_id,
        previous_state=expected_status.value,
        new_state=new_status.value,
        transition_type=TransitionType(transition_type).value,
        triggered_by_type=triggered_by_type,
        reason=reason,
        metadata=metadata,
    )

    logger.info(f"Document {document_id} transitioned: {expected_status.value} → {new_status.value}")
    return updated


async def record_transition(
    document_id: str,
    previous_state: Optional[str],
    new_state: str,
    transition_type: str,
    triggered_by_type: str,
    reason: Optional[str] = None,
    metadata: Optional[Dict] = None,
) -> str:
    """
    Append a committed state transition to the document timeline.
    Returns the execution_id.
    """
    db = database.get_db()

    execution_id = generate_execution_id()
    await db.document_status_history.insert_one({
        "execution_id": execution_id,
        "document_id": document_id,
        "previous_state": previous_state,
        "new_state": new_state,
        "transition_type": transition_type,
        "triggered_by": {"type": triggered_by_type},
        "reason": reason,
        "metadata": metadata,
        "created_at": datetime.now(timezone.utc),
    })
    return execution_id


async def increment_download_count(document_id: str) -> None:
    """Count a delivery; never touches status."""
    db = database.get_db()
    await db.document_tokens.update_one(
        {"id": document_id},
        {"$inc": {"download_count": 1}, "$set": {"last_downloaded_at": datetime.now(timezone.utc)}},
    )


async def get_document_timeline(document_id: str) -> List[Dict]:
    """Get all committed transitions for a document (audit timeline)"""
    db = database.get_db()
    cursor = db.document_status_history.find(
        {"document_id": document_id},
        {"_id": 0}
    ).sort("created_at", 1)
    return await cursor.to_list(length=None)
