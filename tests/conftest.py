"""
Pytest configuration and fixtures for the issuance backend tests.

Provides an in-memory record store with the same async interface as
MongoRecordStore, a tmp-path blob store, a recording broadcaster and
builders for PDFs, manifests and ZIP uploads.
"""
import io
import zipfile
from typing import Dict, List, Optional

import pandas as pd
import pytest
import pytest_asyncio
from reportlab.pdfgen import canvas

from app.core.config import Settings
from app.models.batch_model import BatchDocument
from app.models.certificate_model import CertificateDocument
from app.models.project_model import ProjectCreate, ProjectDocument, QrCoordinates
from app.services.batch_service import BatchService
from app.services.issuance_service import IssuanceService
from app.services.pacing import NoDelay
from app.services.project_service import ProjectService
from app.storage.blob_store import FileBlobStore
from app.utils.helpers import utcnow


# =======================
# FAKES
# =======================

def _apply(model, fields):
    fields = {**fields, "updated_at": utcnow()}
    return type(model)(**{**model.model_dump(), **fields})


class InMemoryRecordStore:
    """Dict-backed stand-in for MongoRecordStore."""

    def __init__(self):
        self.projects: Dict[str, ProjectDocument] = {}
        self.batches: Dict[str, BatchDocument] = {}
        self.certificates: Dict[str, CertificateDocument] = {}

    async def insert_project(self, project):
        self.projects[project.id] = project
        return project

    async def get_project(self, project_id):
        return self.projects.get(project_id)

    async def find_project_by_name(self, name):
        for project in self.projects.values():
            if project.name.lower() == name.lower():
                return project
        return None

    async def list_projects(self):
        return sorted(self.projects.values(), key=lambda p: p.created_at, reverse=True)

    async def update_project(self, project_id, **fields):
        self.projects[project_id] = _apply(self.projects[project_id], fields)
        return self.projects[project_id]

    async def delete_project(self, project_id):
        self.certificates = {k: c for k, c in self.certificates.items() if c.project_id != project_id}
        self.batches = {k: b for k, b in self.batches.items() if b.project_id != project_id}
        return self.projects.pop(project_id, None) is not None

    async def insert_batch(self, batch):
        self.batches[batch.id] = batch
        return batch

    async def get_batch(self, batch_id):
        return self.batches.get(batch_id)

    async def list_batches(self, project_id):
        found = [b for b in self.batches.values() if b.project_id == project_id]
        return sorted(found, key=lambda b: b.created_at, reverse=True)

    async def find_batches(self, status, updated_before=None):
        return [
            b for b in self.batches.values()
            if b.status == status and (updated_before is None or b.updated_at < updated_before)
        ]

    async def update_batch(self, batch_id, **fields):
        self.batches[batch_id] = _apply(self.batches[batch_id], fields)

    async def insert_certificates(self, certificates):
        for certificate in certificates:
            self.certificates[certificate.id] = certificate

    async def get_certificate(self, cert_id):
        return self.certificates.get(cert_id)

    async def find_certificates(self, batch_id=None, project_id=None, status=None, ids=None):
        wanted = set(ids) if ids is not None else None
        found = [
            c for c in self.certificates.values()
            if (batch_id is None or c.batch_id == batch_id)
            and (project_id is None or c.project_id == project_id)
            and (status is None or c.status == status)
            and (wanted is None or c.id in wanted)
        ]
        return sorted(found, key=lambda c: (c.created_at, c.row_number))

    async def update_certificate(self, cert_id, **fields):
        self.certificates[cert_id] = _apply(self.certificates[cert_id], fields)
        return self.certificates[cert_id]

    async def transition_certificate(self, cert_id, from_status, **fields):
        certificate = self.certificates.get(cert_id)
        if certificate is None or certificate.status != from_status:
            return None
        return await self.update_certificate(cert_id, **fields)

    async def update_batch_certificates(self, batch_id, status, /, **fields):
        matched = [c for c in self.certificates.values() if c.batch_id == batch_id and c.status == status]
        for certificate in matched:
            self.certificates[certificate.id] = _apply(certificate, fields)
        return len(matched)


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]


# =======================
# BUILDERS
# =======================

def make_pdf(width: float = 612, height: float = 792, pages: int = 1) -> bytes:
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height))
    for number in range(pages):
        pdf.drawString(72, height - 72, f"Certificate page {number + 1}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def make_manifest(rows: List[dict], fmt: str = "xlsx") -> bytes:
    df = pd.DataFrame(rows)
    buffer = io.BytesIO()
    if fmt == "csv":
        df.to_csv(buffer, index=False)
    else:
        df.to_excel(buffer, index=False)
    return buffer.getvalue()


def make_zip(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def make_batch_zip(rows: List[dict], pdf_names: List[str], manifest_name: str = "mapping.xlsx") -> bytes:
    fmt = "csv" if manifest_name.endswith(".csv") else "xlsx"
    files = {manifest_name: make_manifest(rows, fmt)}
    files.update({name: make_pdf() for name in pdf_names})
    return make_zip(files)


TWO_ROWS = [
    {"certificateId": "C1", "filename": "a.pdf"},
    {"certificateId": "C2", "filename": "b.pdf"},
]


# =======================
# FIXTURES
# =======================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    config = Settings()
    config.UPLOADS_DIR = tmp_path / "uploads"
    config.RETRY_DELAY_SECONDS = 0
    config.PROCESSING_DELAY_MODE = "none"
    config.MANIFEST_COLUMN_MATCH = "substring"
    config.VERIFICATION_BASE_URL = "https://verify.test"
    return config


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def blobs(test_settings) -> FileBlobStore:
    return FileBlobStore(test_settings.UPLOADS_DIR)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def issuance(store, blobs, broadcaster, test_settings) -> IssuanceService:
    return IssuanceService(store, blobs, broadcaster, test_settings, pacing=NoDelay())


@pytest.fixture
def batch_service(store, blobs, test_settings) -> BatchService:
    return BatchService(store, blobs, test_settings)


@pytest.fixture
def project_service(store, blobs) -> ProjectService:
    return ProjectService(store, blobs)


@pytest_asyncio.fixture
async def ready_project(project_service) -> ProjectDocument:
    """A project with a template and QR placement set."""
    project = await project_service.create_project(
        ProjectCreate(name="Spring Cohort", issuer="Academy", issue_date="2026-05-01")
    )
    await project_service.save_template(project.id, make_pdf())
    return await project_service.save_coordinates(project.id, QrCoordinates(x=80, y=10))


@pytest_asyncio.fixture
async def valid_batch(batch_service, ready_project) -> BatchDocument:
    return await batch_service.ingest_zip(ready_project.id, make_batch_zip(TWO_ROWS, ["a.pdf", "b.pdf"]))


def certificate_events(events, event_type: str, cert_id: Optional[str] = None):
    return [
        e for e in events
        if e.type == event_type and (cert_id is None or e.certificate_id == cert_id)
    ]
