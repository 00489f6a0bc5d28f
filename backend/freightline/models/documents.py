"""Pydantic models for load documents."""
from pydantic import BaseModel, Field
from enum import Enum

from freightline.models.base import UTCDateTime, utcnow


class DocumentType(str, Enum):
    """Standard trucking document types."""
    BOL = "bill_of_lading"
    POD = "proof_of_delivery"  # Proof of Delivery
    RATE_CONFIRMATION = "rate_confirmation"
    INVOICE = "invoice"
    WEIGHT_TICKET = "weight_ticket"
    LUMPER_RECEIPT = "lumper_receipt"
    OTHER = "other"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class VerificationStatus(str, Enum):
    """Review state of an uploaded document."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class UploadUrlRequest(BaseModel):
    """Request an opaque upload endpoint for a load document."""
    file_name: str = Field(..., min_length=1)
    file_type: str = Field(..., min_length=1)


class DocumentCreateRequest(BaseModel):
    """Metadata recorded after a file has been uploaded."""
    type: DocumentType
    name: str = Field(..., min_length=1)
    file_url: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    mime_type: str
    notes: str | None = None


class DocumentVerifyRequest(BaseModel):
    verification_status: VerificationStatus
    notes: str | None = None


class Document(BaseModel):
    """A document attached to a load."""
    document_id: str
    load_id: str
    user_id: str
    type: DocumentType = DocumentType.OTHER
    name: str
    file_url: str
    file_size: int = 0
    mime_type: str = "application/octet-stream"
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_by: str | None = None
    verified_at: UTCDateTime | None = None
    notes: str | None = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)
