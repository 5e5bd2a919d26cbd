"""
models/certificate_model.py
MongoDB document schema and Pydantic models for certificates.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class CertificateStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    ISSUED = "issued"
    FAILED = "failed"


class CertificateDocument(BaseModel):
    """Full MongoDB document model. `certificate_id` is the business identifier from the manifest."""
    id: str
    project_id: str
    batch_id: str
    certificate_id: str
    filename: str
    row_number: int = 0
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    status: CertificateStatus = CertificateStatus.PENDING.value
    issued_pdf_path: Optional[str] = None
    qr_code_data: Optional[str] = None
    verification_url: Optional[str] = None
    error_message: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class BulkCertificateRequest(BaseModel):
    """Request model for bulk retry / reissue."""
    certificate_ids: List[str] = Field(..., min_length=1)
