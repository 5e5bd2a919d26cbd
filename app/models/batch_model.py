"""
models/batch_model.py
Pydantic models for uploaded batches and their validation report.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchBreakdown(BaseModel):
    batch_number: int
    certificate_count: int
    estimated_time: int  # minutes


class ValidationResult(BaseModel):
    """Outcome of cross-checking a manifest against the PDFs in a ZIP. Never mutated once computed."""
    is_valid: bool = False
    total_entries: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    estimated_processing_time: int = 0  # minutes
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    missing_pdfs: List[str] = Field(default_factory=list)
    extra_pdfs: List[str] = Field(default_factory=list)
    batch_breakdown: List[BatchBreakdown] = Field(default_factory=list)

    @classmethod
    def failed(cls, *errors: str) -> "ValidationResult":
        return cls(is_valid=False, errors=list(errors))


class BatchDocument(BaseModel):
    """Full MongoDB document model."""
    id: str
    project_id: str
    name: str
    total_certificates: int = 0
    processed_certificates: int = 0
    status: BatchStatus = BatchStatus.PENDING.value
    zip_file_path: Optional[str] = None
    manifest_filename: Optional[str] = None
    validation_result: ValidationResult = Field(default_factory=ValidationResult)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
