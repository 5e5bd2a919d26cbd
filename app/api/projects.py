"""
api/projects.py
FastAPI router for project setup and batch uploads.
"""
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.api.deps import get_batch_service, get_project_service
from app.models.project_model import ProjectCreate, QrCoordinates
from app.services.batch_service import BatchService
from app.services.project_service import ProjectService
from app.utils.helpers import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api/projects", tags=["Projects"])


# ── Projects ───────────────────────────────────────────────────────────────────

@router.get("")
async def list_projects(projects: ProjectService = Depends(get_project_service)):
    return {"projects": await projects.list_projects()}


@router.post("", status_code=201)
async def create_project(data: ProjectCreate, projects: ProjectService = Depends(get_project_service)):
    return await projects.create_project(data)


@router.get("/{project_id}")
async def get_project(project_id: str, projects: ProjectService = Depends(get_project_service)):
    return await projects.get_project(project_id)


@router.delete("/{project_id}")
async def delete_project(project_id: str, projects: ProjectService = Depends(get_project_service)):
    """Delete a project together with its batches, certificates and files."""
    await projects.delete_project(project_id)
    return {"message": "Project deleted successfully."}


# ── Template & QR placement ───────────────────────────────────────────────────

@router.post("/{project_id}/template")
async def upload_template(
    project_id: str,
    file: UploadFile = File(...),
    projects: ProjectService = Depends(get_project_service),
):
    """Upload the certificate template PDF."""
    if not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Template must be a PDF file.")
    content = await file.read()
    return await projects.save_template(project_id, content)


@router.put("/{project_id}/coordinates")
async def save_coordinates(
    project_id: str,
    coordinates: QrCoordinates,
    projects: ProjectService = Depends(get_project_service),
):
    """Set the QR position as percentages of page width and height."""
    return await projects.save_coordinates(project_id, coordinates)


# ── Batches ────────────────────────────────────────────────────────────────────

@router.post("/{project_id}/batch")
async def upload_batch(
    project_id: str,
    file: UploadFile = File(...),
    batches: BatchService = Depends(get_batch_service),
):
    """
    Upload a ZIP with the manifest and recipient PDFs.
    The batch is returned with its validation report either way.
    """
    if not file.filename.lower().endswith(".zip"):
        raise HTTPException(status_code=400, detail="Batch upload must be a ZIP file.")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Batch ZIP file is empty.")

    batch = await batches.ingest_zip(project_id, content, file.filename)
    message = (
        "Batch ZIP processed successfully."
        if batch.validation_result.is_valid
        else "Batch ZIP processed with validation errors."
    )
    return {"message": message, "batch": batch}


@router.get("/{project_id}/batches")
async def list_batches(project_id: str, batches: BatchService = Depends(get_batch_service)):
    return {"batches": await batches.list_batches(project_id)}


@router.get("/{project_id}/batches/{batch_id}")
async def get_batch(project_id: str, batch_id: str, batches: BatchService = Depends(get_batch_service)):
    return await batches.get_batch(batch_id, project_id=project_id)
