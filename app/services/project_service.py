"""
services/project_service.py
Project setup flow: create, template upload, QR placement, cascade delete.
"""
import io
from typing import List

from pypdf import PdfReader

from app.core.exceptions import DuplicateProjectError, IssuanceError, ProjectNotFoundError
from app.models.project_model import ProjectCreate, ProjectDocument, QrCoordinates
from app.storage.blob_store import template_key
from app.utils.helpers import generate_id, get_logger, utcnow

logger = get_logger(__name__)


class ProjectService:
    def __init__(self, store, blobs):
        self.store = store
        self.blobs = blobs

    async def create_project(self, data: ProjectCreate) -> ProjectDocument:
        name = data.name.strip()
        if await self.store.find_project_by_name(name):
            raise DuplicateProjectError(name)

        now = utcnow()
        project = ProjectDocument(
            id=generate_id(),
            name=name,
            issuer=data.issuer.strip(),
            issue_date=data.issue_date,
            description=data.description,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_project(project)
        logger.info(f"Project created: {project.name} ({project.id})")
        return project

    async def list_projects(self) -> List[ProjectDocument]:
        return await self.store.list_projects()

    async def get_project(self, project_id: str) -> ProjectDocument:
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def save_template(self, project_id: str, pdf_bytes: bytes) -> ProjectDocument:
        """Store the template PDF after checking it parses and has a page."""
        await self.get_project(project_id)
        try:
            page_count = len(PdfReader(io.BytesIO(pdf_bytes)).pages)
        except Exception as e:
            raise IssuanceError(f"Template is not a readable PDF: {e}") from e
        if page_count == 0:
            raise IssuanceError("Template PDF has no pages")

        key = await self.blobs.write_bytes(template_key(project_id), pdf_bytes)
        logger.info(f"Template uploaded for project {project_id}: {key}")
        return await self.store.update_project(project_id, template_pdf_path=key)

    async def save_coordinates(self, project_id: str, coordinates: QrCoordinates) -> ProjectDocument:
        await self.get_project(project_id)
        logger.info(f"QR coordinates for project {project_id}: ({coordinates.x}, {coordinates.y})")
        return await self.store.update_project(project_id, qr_coordinates=coordinates)

    async def delete_project(self, project_id: str) -> None:
        """Delete the project, its batches, certificates and stored files."""
        await self.get_project(project_id)
        await self.store.delete_project(project_id)
        await self.blobs.delete_prefix(f"projects/{project_id}")
