"""
models/project_model.py
Pydantic models for issuing projects and their QR placement.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class QrCoordinates(BaseModel):
    """QR placement as a percentage of page width (x) and height (y)."""
    x: float = Field(..., ge=0, le=100)
    y: float = Field(..., ge=0, le=100)


class ProjectCreate(BaseModel):
    """Input model for the project setup flow."""
    name: str = Field(..., min_length=3, max_length=100)
    issuer: str = Field(..., min_length=1, max_length=100)
    issue_date: str
    description: Optional[str] = Field(None, max_length=500)


class ProjectDocument(BaseModel):
    """Full MongoDB document model."""
    id: str
    name: str
    issuer: str
    issue_date: str
    description: Optional[str] = None
    template_pdf_path: Optional[str] = None
    qr_coordinates: Optional[QrCoordinates] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        """A batch can only be uploaded once both template and QR placement are set."""
        return bool(self.template_pdf_path) and self.qr_coordinates is not None
