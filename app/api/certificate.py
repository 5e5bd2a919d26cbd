"""
api/certificate.py
FastAPI router for batch issuance, certificate actions and live progress.
"""
import asyncio
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse

from app.api.deps import get_broadcaster, get_issuance_service
from app.models.certificate_model import BulkCertificateRequest
from app.services.issuance_service import IssuanceService
from app.services.progress import ProgressBroadcaster
from app.utils.helpers import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["Certificates"])

KEEPALIVE_SECONDS = 15.0


# ── Batch processing ───────────────────────────────────────────────────────────

@router.post("/batches/{batch_id}/start", status_code=202)
async def start_batch(batch_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    """Start issuing every pending certificate of a batch. Progress arrives on /api/progress/stream."""
    await issuance.start_batch_processing(batch_id)
    return {"message": "Batch processing started.", "batch_id": batch_id}


@router.get("/batches/{batch_id}/status")
async def get_batch_status(batch_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return await issuance.get_batch_status(batch_id)


@router.get("/batches/{batch_id}/certificates")
async def list_batch_certificates(batch_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return {"certificates": await issuance.list_certificates(batch_id=batch_id)}


@router.get("/projects/{project_id}/certificates")
async def list_project_certificates(project_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return {"certificates": await issuance.list_certificates(project_id=project_id)}


# ── Single certificate ─────────────────────────────────────────────────────────

@router.get("/certificates/{cert_id}")
async def get_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return await issuance.get_certificate(cert_id)


@router.get("/certificates/{cert_id}/download")
async def download_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    """Download the stamped PDF of an issued certificate."""
    certificate = await issuance.get_certificate(cert_id)
    if not certificate.issued_pdf_path:
        raise HTTPException(status_code=404, detail="Certificate has not been issued yet.")
    path = issuance.blobs.path_for(certificate.issued_pdf_path)
    if not path.exists():
        raise HTTPException(status_code=404, detail="Issued PDF is missing from storage.")
    return FileResponse(path, media_type="application/pdf", filename=certificate.filename)


@router.post("/certificates/{cert_id}/retry", status_code=202)
async def retry_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    await issuance.retry_certificate(cert_id)
    return {"message": "Certificate queued for retry."}


@router.post("/certificates/{cert_id}/reissue", status_code=202)
async def reissue_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    await issuance.reissue_certificate(cert_id)
    return {"message": "Certificate queued for reissue."}


@router.post("/certificates/{cert_id}/republish")
async def republish_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return await issuance.republish_certificate(cert_id)


@router.post("/certificates/{cert_id}/process")
async def process_certificate(cert_id: str, issuance: IssuanceService = Depends(get_issuance_service)):
    return await issuance.process_pending_certificate(cert_id)


# ── Bulk actions ───────────────────────────────────────────────────────────────

@router.post("/certificates/bulk-retry", status_code=202)
async def bulk_retry(request: BulkCertificateRequest, issuance: IssuanceService = Depends(get_issuance_service)):
    count = await issuance.bulk_retry_certificates(request.certificate_ids)
    return {"message": f"Retrying {count} failed certificates."}


@router.post("/certificates/bulk-reissue", status_code=202)
async def bulk_reissue(request: BulkCertificateRequest, issuance: IssuanceService = Depends(get_issuance_service)):
    count = await issuance.bulk_reissue_certificates(request.certificate_ids)
    return {"message": f"Reissuing {count} certificates."}


# ── Progress (SSE) ─────────────────────────────────────────────────────────────

@router.get("/progress/stream")
async def progress_stream(
    request: Request,
    batch_id: Optional[str] = None,
    project_id: Optional[str] = None,
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
):
    """Server-sent events for issuance progress, scoped to a batch and/or project."""

    async def events() -> AsyncGenerator[str, None]:
        async with broadcaster.subscribe(batch_id=batch_id, project_id=project_id) as queue:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
