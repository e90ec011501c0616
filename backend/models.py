from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class AuditAction(str, Enum):
    # Document lifecycle
    DOCUMENT_REQUESTED = "DOCUMENT_REQUESTED"
    DOCUMENT_OBSERVATIONS_SUBMITTED = "DOCUMENT_OBSERVATIONS_SUBMITTED"
    DOCUMENT_DOWNLOADED = "DOCUMENT_DOWNLOADED"

    # Payments
    PAYMENT_SESSION_OPENED = "PAYMENT_SESSION_OPENED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_NEEDS_ATTENTION = "PAYMENT_NEEDS_ATTENTION"
    PAYMENT_REVERSAL_RECEIVED = "PAYMENT_REVERSAL_RECEIVED"
    GATEWAY_EVENT_FAILED = "GATEWAY_EVENT_FAILED"

class PaymentProvider(str, Enum):
    BOLD = "bold"
    STRIPE = "stripe"

class PaymentSessionStatus(str, Enum):
    OPEN = "open"
    APPROVED = "approved"
    EXPIRED = "expired"

class GatewayEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class DocumentRequestCreate(BaseModel):
    document_type: str = Field(..., min_length=1)
    document_content: str = Field(..., min_length=1)
    user_email: EmailStr
    user_name: str = Field(..., min_length=1)
    price: Optional[int] = Field(default=None, ge=0)
    sla_hours: Optional[int] = Field(default=None, gt=0)

class ObservationPayload(BaseModel):
    observations: str

class CompleteReviewPayload(BaseModel):
    content: Optional[str] = None

class PaymentConfigRequest(BaseModel):
    """Client-sent amount/documentType/token are informational; the order's document is authoritative."""
    orderId: str
    amount: Optional[int] = None
    documentType: Optional[str] = None
    token: Optional[str] = None

class PaymentStatusRequest(BaseModel):
    orderId: str

class DocumentView(BaseModel):
    """Client-safe projection of a Document Record."""
    model_config = ConfigDict(extra="ignore")

    token: str
    document_type: str
    content: str
    price: int
    status: str
    user_observations: Optional[str] = None
    user_observation_date: Optional[datetime] = None
    sla_deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    progress: Dict[str, Any] = Field(default_factory=dict)
    payment_completed: bool = False

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_type: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
