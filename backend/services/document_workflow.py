"""
Document Workflow State Machine
Defines all valid states, transitions, and business rules for purchasable documents.
This is the single source of truth for document status logic: every write in
services.document_store is checked against ALLOWED_TRANSITIONS first.
"""
from enum import Enum
from typing import List, Dict, Optional, Set, Tuple


class DocumentStatus(str, Enum):
    """
    Document lifecycle states - 5 states total
    """
    REQUESTED = "requested"                   # Created by the authoring flow
    IN_LAWYER_REVIEW = "in_lawyer_review"     # Professional is reviewing
    IN_CLIENT_REVIEW = "in_client_review"     # Client approves or requests changes
    PAID = "paid"                             # Payment confirmed, artifact released
    DOWNLOADED = "downloaded"                 # Artifact delivered at least once


class TransitionType(str, Enum):
    """Who drove a state transition"""
    SYSTEM = "system"                         # Payment channels, sweeps
    PROFESSIONAL = "professional"             # Lawyer review actions
    CUSTOMER_ACTION = "customer_action"       # Client observations / downloads


class InvalidTransition(ValueError):
    """Raised when a requested status change is not in ALLOWED_TRANSITIONS."""

    def __init__(self, from_status, to_status, message: Optional[str] = None):
        self.from_status = DocumentStatus(from_status)
        self.to_status = DocumentStatus(to_status)
        allowed = [s.value for s in get_allowed_transitions(self.from_status)]
        super().__init__(
            message
            or f"Invalid transition: {self.from_status.value} → {self.to_status.value}. Allowed: {allowed}"
        )


class EmptyObservation(ValueError):
    """Raised when a client submits blank observations."""


# Valid state transitions - whitelist approach
ALLOWED_TRANSITIONS: Dict[DocumentStatus, List[DocumentStatus]] = {
    DocumentStatus.REQUESTED: [
        DocumentStatus.IN_LAWYER_REVIEW,      # Professional begins review
        DocumentStatus.PAID,                  # Free documents only
    ],
    DocumentStatus.IN_LAWYER_REVIEW: [DocumentStatus.IN_CLIENT_REVIEW],
    DocumentStatus.IN_CLIENT_REVIEW: [
        DocumentStatus.IN_LAWYER_REVIEW,      # Client observations
        DocumentStatus.PAID,                  # Payment confirmed
    ],
    DocumentStatus.PAID: [DocumentStatus.DOWNLOADED],
    # Terminal state
    DocumentStatus.DOWNLOADED: [],
}


# Edges that are only legal for documents with price == 0
FREE_ONLY_TRANSITIONS: Set[Tuple[DocumentStatus, DocumentStatus]] = {
    (DocumentStatus.REQUESTED, DocumentStatus.PAID),
}


# Transitions driven by the professional side (outside the client flow)
PROFESSIONAL_TRANSITIONS: Set[Tuple[DocumentStatus, DocumentStatus]] = {
    (DocumentStatus.REQUESTED, DocumentStatus.IN_LAWYER_REVIEW),
    (DocumentStatus.IN_LAWYER_REVIEW, DocumentStatus.IN_CLIENT_REVIEW),
}


# Statuses in which the artifact may be handed to the client
RELEASED_STATES: Set[DocumentStatus] = {
    DocumentStatus.PAID,
    DocumentStatus.DOWNLOADED,
}


TERMINAL_STATES: Set[DocumentStatus] = {
    DocumentStatus.DOWNLOADED,
}


def is_valid_transition(
    from_status: DocumentStatus,
    to_status: DocumentStatus,
    price: Optional[int] = None,
) -> bool:
    """Check if a state transition is valid.

    Free-only edges need the document price; an unknown price is not free.
    """
    from_status = DocumentStatus(from_status)
    to_status = DocumentStatus(to_status)
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, []):
        return False
    if (from_status, to_status) in FREE_ONLY_TRANSITIONS:
        return price == 0
    return True


def assert_transition(
    from_status: DocumentStatus,
    to_status: DocumentStatus,
    price: Optional[int] = None,
) -> None:
    """Raise InvalidTransition unless the edge is allowed."""
    if not is_valid_transition(from_status, to_status, price):
        if (DocumentStatus(from_status), DocumentStatus(to_status)) in FREE_ONLY_TRANSITIONS:
            raise InvalidTransition(
                from_status, to_status,
                f"Transition {DocumentStatus(from_status).value} → {DocumentStatus(to_status).value} "
                f"is only allowed for free documents",
            )
        raise InvalidTransition(from_status, to_status)


def requires_free_document(from_status: DocumentStatus, to_status: DocumentStatus) -> bool:
    """Check if an edge is restricted to price == 0"""
    return (DocumentStatus(from_status), DocumentStatus(to_status)) in FREE_ONLY_TRANSITIONS


def is_professional_transition(from_status: DocumentStatus, to_status: DocumentStatus) -> bool:
    return (DocumentStatus(from_status), DocumentStatus(to_status)) in PROFESSIONAL_TRANSITIONS


def is_released(status: DocumentStatus) -> bool:
    """Check if the artifact may be delivered in this status"""
    return DocumentStatus(status) in RELEASED_STATES


def is_terminal_state(status: DocumentStatus) -> bool:
    return DocumentStatus(status) in TERMINAL_STATES


def get_allowed_transitions(status: DocumentStatus) -> List[DocumentStatus]:
    """Get list of valid next states from current status"""
    return ALLOWED_TRANSITIONS.get(DocumentStatus(status), [])


# Progress steps for the client status view (in display order)
STATUS_STEPS: List[Dict] = [
    {"status": DocumentStatus.REQUESTED, "label": "Requested", "step": 1},
    {"status": DocumentStatus.IN_LAWYER_REVIEW, "label": "In lawyer review", "step": 2},
    {"status": DocumentStatus.IN_CLIENT_REVIEW, "label": "Ready for your review", "step": 3},
    {"status": DocumentStatus.PAID, "label": "Paid", "step": 4},
    {"status": DocumentStatus.DOWNLOADED, "label": "Downloaded", "step": 5},
]


def get_status_progress(status: DocumentStatus) -> Dict:
    """Step, label and completion percentage for a status."""
    status = DocumentStatus(status)
    for column in STATUS_STEPS:
        if column["status"] == status:
            return {
                "status": status.value,
                "label": column["label"],
                "step": column["step"],
                "total_steps": len(STATUS_STEPS),
                "percent": round(column["step"] * 100 / len(STATUS_STEPS)),
            }
    raise ValueError(f"Unknown document status: {status}")
