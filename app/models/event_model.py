"""
models/event_model.py
Typed progress messages published by the issuance service.

`certificate_id` on certificate events is the certificate record id.
"""
from datetime import datetime
from typing import Literal, Optional, Union
from pydantic import BaseModel, Field

from app.utils.helpers import utcnow


class ProgressEvent(BaseModel):
    type: str
    batch_id: str
    project_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class BatchStarted(ProgressEvent):
    type: Literal["batchStarted"] = "batchStarted"
    total_certificates: int


class BatchCompleted(ProgressEvent):
    type: Literal["batchCompleted"] = "batchCompleted"


class BatchFailed(ProgressEvent):
    type: Literal["batchFailed"] = "batchFailed"
    error: str


class CertificateStarted(ProgressEvent):
    type: Literal["certificateStarted"] = "certificateStarted"
    certificate_id: str


class CertificateCompleted(ProgressEvent):
    type: Literal["certificateCompleted"] = "certificateCompleted"
    certificate_id: str
    status: str
    error: Optional[str] = None


class CertificateRepublished(ProgressEvent):
    type: Literal["certificateRepublished"] = "certificateRepublished"
    certificate_id: str


AnyProgressEvent = Union[
    BatchStarted,
    BatchCompleted,
    BatchFailed,
    CertificateStarted,
    CertificateCompleted,
    CertificateRepublished,
]
