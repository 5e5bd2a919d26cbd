"""
services/issuance_service.py
Drives certificate issuance: the per-batch drain loop, the per-certificate
state machine, operator actions (retry / reissue / republish / bulk) and
progress events.

Certificate states:  pending -> in-progress -> issued | failed
Batch states:        pending -> processing -> completed | failed

One IssuanceService is built at startup and shared through app.state.
"""
import asyncio
import threading
import time
from collections import Counter
from datetime import timedelta
from typing import Iterable, List, Optional

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    BatchAlreadyCompletedError,
    BatchAlreadyProcessingError,
    BatchNotFoundError,
    BatchNotValidError,
    CertificateNotFoundError,
    CertificateStateError,
    NoMatchingCertificatesError,
    StampingError,
)
from app.models.batch_model import BatchDocument, BatchStatus
from app.models.certificate_model import CertificateDocument, CertificateStatus
from app.models.event_model import (
    BatchCompleted,
    BatchFailed,
    BatchStarted,
    CertificateCompleted,
    CertificateRepublished,
    CertificateStarted,
    AnyProgressEvent,
)
from app.services.pacing import build_pacing
from app.services.pdf_stamper import build_verification_url, stamp_pdf
from app.storage.blob_store import issued_pdf_key, source_pdf_key
from app.utils.helpers import get_logger, utcnow

logger = get_logger(__name__)


class ProcessingRegistry:
    """Thread-safe set of batch ids with an active issuance run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def claim(self, batch_id: str) -> bool:
        """Insert `batch_id` if absent. Returns False if it was already claimed."""
        with self._lock:
            if batch_id in self._active:
                return False
            self._active.add(batch_id)
            return True

    def release(self, batch_id: str) -> None:
        with self._lock:
            self._active.discard(batch_id)

    def is_active(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._active


class IssuanceService:
    def __init__(self, store, blobs, broadcaster, config: Optional[Settings] = None, pacing=None):
        self.store = store
        self.blobs = blobs
        self.broadcaster = broadcaster
        self.config = config or default_settings
        self.pacing = pacing or build_pacing(self.config)
        self.registry = ProcessingRegistry()
        self._background: set[asyncio.Task] = set()

    # ── Events ────────────────────────────────────────────────────────────────

    def _emit(self, event: AnyProgressEvent) -> None:
        self.broadcaster.publish(event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Batch processing ─────────────────────────────────────────────────────

    async def start_batch_processing(self, batch_id: str) -> asyncio.Task:
        """
        Check that `batch_id` may be processed, claim it and launch the drain
        loop in the background. The returned task finishes when the batch does.

        Raises:
            BatchAlreadyProcessingError: another run holds the batch
            BatchNotFoundError / BatchAlreadyCompletedError / BatchNotValidError
        """
        if not self.registry.claim(batch_id):
            logger.warning(f"Rejected start for batch {batch_id}: already processing")
            raise BatchAlreadyProcessingError(batch_id)

        try:
            batch = await self.store.get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if batch.status == BatchStatus.PROCESSING:
                raise BatchAlreadyProcessingError(batch_id)
            if batch.status == BatchStatus.COMPLETED:
                raise BatchAlreadyCompletedError(batch_id)
            if not batch.validation_result.is_valid:
                raise BatchNotValidError(batch_id)
        except Exception:
            self.registry.release(batch_id)
            raise

        return self._spawn(self._run_batch(batch))

    async def _run_batch(self, batch: BatchDocument) -> None:
        batch_id = batch.id
        try:
            await self.store.update_batch(
                batch_id, status=BatchStatus.PROCESSING, error_message=None
            )
            certificates = await self.store.find_certificates(
                batch_id=batch_id, status=CertificateStatus.PENDING.value
            )
            logger.info(f"Batch {batch_id}: processing {len(certificates)} pending certificates")
            self._emit(BatchStarted(
                batch_id=batch_id, project_id=batch.project_id, total_certificates=len(certificates)
            ))

            for index, certificate in enumerate(certificates):
                await self._process_certificate(certificate)
                await self.store.update_batch(batch_id, processed_certificates=index + 1)
                if index < len(certificates) - 1:
                    await self.pacing.wait()

            await self.store.update_batch(
                batch_id, status=BatchStatus.COMPLETED, processed_certificates=len(certificates)
            )
            logger.info(f"Batch {batch_id}: completed")
            self._emit(BatchCompleted(batch_id=batch_id, project_id=batch.project_id))

        except Exception as e:
            logger.error(f"Batch {batch_id} failed: {e}", exc_info=True)
            try:
                await self.store.update_batch(batch_id, status=BatchStatus.FAILED, error_message=str(e))
            except Exception as store_error:
                logger.error(f"Batch {batch_id}: could not record failure: {store_error}")
            self._emit(BatchFailed(batch_id=batch_id, project_id=batch.project_id, error=str(e)))
        finally:
            self.registry.release(batch_id)

    # ── Single certificate ───────────────────────────────────────────────────

    async def _process_certificate(self, certificate: CertificateDocument) -> Optional[CertificateDocument]:
        """
        Run one pending certificate through in-progress to issued or failed.
        Stamping problems fail the certificate; record-store errors propagate.

        Returns None without doing anything if the certificate is no longer
        pending (another run already picked it up).
        """
        claimed = await self.store.transition_certificate(
            certificate.id,
            CertificateStatus.PENDING.value,
            status=CertificateStatus.IN_PROGRESS,
            processing_started_at=utcnow(),
            processing_completed_at=None,
            error_message=None,
        )
        if claimed is None:
            logger.info(f"Certificate {certificate.certificate_id} is no longer pending; skipping")
            return None
        self._emit(CertificateStarted(
            certificate_id=certificate.id,
            batch_id=certificate.batch_id,
            project_id=certificate.project_id,
        ))

        try:
            issued = await self._issue(certificate)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Certificate {certificate.certificate_id} failed: {message}")
            updated = await self.store.update_certificate(
                certificate.id,
                status=CertificateStatus.FAILED,
                error_message=message,
                processing_completed_at=utcnow(),
            )
            self._emit(CertificateCompleted(
                certificate_id=certificate.id,
                batch_id=certificate.batch_id,
                project_id=certificate.project_id,
                status=CertificateStatus.FAILED.value,
                error=message,
            ))
            return updated

        updated = await self.store.update_certificate(
            certificate.id,
            status=CertificateStatus.ISSUED,
            processing_completed_at=utcnow(),
            **issued,
        )
        logger.info(f"Certificate {certificate.certificate_id} issued")
        self._emit(CertificateCompleted(
            certificate_id=certificate.id,
            batch_id=certificate.batch_id,
            project_id=certificate.project_id,
            status=CertificateStatus.ISSUED.value,
        ))
        return updated

    async def _issue(self, certificate: CertificateDocument) -> dict:
        """Stamp the recipient PDF and store it. Returns the fields to persist."""
        project = await self.store.get_project(certificate.project_id)
        if project is None or project.qr_coordinates is None:
            raise StampingError("Project or QR coordinates not found")

        source_key = source_pdf_key(certificate.project_id, certificate.batch_id, certificate.filename)
        if not await self.blobs.exists(source_key):
            raise StampingError(f"Original PDF '{certificate.filename}' not found in the uploaded ZIP file.")
        source_pdf = await self.blobs.read_bytes(source_key)

        verification_url = build_verification_url(certificate.certificate_id, self.config.VERIFICATION_BASE_URL)
        result = await asyncio.to_thread(
            stamp_pdf, source_pdf, project.qr_coordinates, verification_url, self.config.QR_SIZE_POINTS
        )

        issued_key = issued_pdf_key(certificate.project_id, certificate.batch_id, certificate.filename)
        await self.blobs.write_bytes(issued_key, result.pdf_bytes)
        return {
            "issued_pdf_path": issued_key,
            "qr_code_data": result.qr_code_data,
            "verification_url": result.verification_url,
        }

    async def _get_certificate(self, cert_id: str) -> CertificateDocument:
        certificate = await self.store.get_certificate(cert_id)
        if certificate is None:
            raise CertificateNotFoundError(cert_id)
        return certificate

    async def _reset_and_schedule(self, certificate: CertificateDocument) -> None:
        reset = await self.store.transition_certificate(
            certificate.id,
            certificate.status,
            status=CertificateStatus.PENDING,
            error_message=None,
            processing_started_at=None,
            processing_completed_at=None,
        )
        if reset is None:
            raise CertificateStateError(f"Certificate {certificate.id} changed status; try again")
        self._spawn(self._reprocess_later(certificate.id))

    async def _reprocess_later(self, cert_id: str) -> None:
        await asyncio.sleep(self.config.RETRY_DELAY_SECONDS)
        try:
            certificate = await self._get_certificate(cert_id)
            await self._process_certificate(certificate)
        except Exception as e:
            logger.error(f"Reprocessing certificate {cert_id} failed: {e}", exc_info=True)

    async def retry_certificate(self, cert_id: str) -> None:
        """Reset a failed certificate to pending and reprocess it shortly after."""
        certificate = await self._get_certificate(cert_id)
        if certificate.status != CertificateStatus.FAILED:
            raise CertificateStateError(
                f"Only failed certificates can be retried (certificate {cert_id} is {certificate.status})"
            )
        logger.info(f"Retrying certificate {certificate.certificate_id}")
        await self._reset_and_schedule(certificate)

    async def reissue_certificate(self, cert_id: str) -> None:
        """Reset a certificate in any settled status to pending and reprocess it."""
        certificate = await self._get_certificate(cert_id)
        if certificate.status == CertificateStatus.IN_PROGRESS:
            raise CertificateStateError(f"Certificate {cert_id} is currently being processed")
        logger.info(f"Reissuing certificate {certificate.certificate_id}")
        await self._reset_and_schedule(certificate)

    async def republish_certificate(self, cert_id: str) -> CertificateDocument:
        """Give an issued certificate a fresh, time-stamped verification URL without re-stamping."""
        certificate = await self._get_certificate(cert_id)
        if certificate.status != CertificateStatus.ISSUED:
            raise CertificateStateError("Can only republish issued certificates")

        verification_url = build_verification_url(
            certificate.certificate_id,
            self.config.VERIFICATION_BASE_URL,
            timestamp_ms=int(time.time() * 1000),
        )
        updated = await self.store.update_certificate(cert_id, verification_url=verification_url)
        self._emit(CertificateRepublished(
            certificate_id=certificate.id,
            batch_id=certificate.batch_id,
            project_id=certificate.project_id,
        ))
        return updated

    async def process_pending_certificate(self, cert_id: str) -> CertificateDocument:
        """Process one certificate that is already pending, outside any batch run."""
        certificate = await self._get_certificate(cert_id)
        if certificate.status != CertificateStatus.PENDING:
            raise CertificateStateError("Certificate must be in pending status to process")
        processed = await self._process_certificate(certificate)
        if processed is None:
            raise CertificateStateError("Certificate must be in pending status to process")
        return processed

    # ── Bulk operations ──────────────────────────────────────────────────────

    async def bulk_retry_certificates(self, cert_ids: Iterable[str]) -> int:
        certificates = await self.store.find_certificates(
            ids=cert_ids, status=CertificateStatus.FAILED.value
        )
        if not certificates:
            raise NoMatchingCertificatesError("No failed certificates found to retry")
        for certificate in certificates:
            await self.retry_certificate(certificate.id)
        return len(certificates)

    async def bulk_reissue_certificates(self, cert_ids: Iterable[str]) -> int:
        certificates = await self.store.find_certificates(ids=cert_ids)
        if not certificates:
            raise NoMatchingCertificatesError("No certificates found to reissue")
        reissued = 0
        for certificate in certificates:
            if certificate.status == CertificateStatus.IN_PROGRESS:
                logger.warning(f"Skipping reissue of in-progress certificate {certificate.id}")
                continue
            await self.reissue_certificate(certificate.id)
            reissued += 1
        return reissued

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_batch_status(self, batch_id: str) -> dict:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        certificates = await self.store.find_certificates(batch_id=batch_id)
        return {
            "batch": batch,
            "certificates": certificates,
            "status_counts": dict(Counter(c.status for c in certificates)),
            "is_processing": self.is_processing(batch_id),
        }

    def is_processing(self, batch_id: str) -> bool:
        """Advisory: whether this process is running the batch right now."""
        return self.registry.is_active(batch_id)

    async def get_certificate(self, cert_id: str) -> CertificateDocument:
        return await self._get_certificate(cert_id)

    async def list_certificates(
        self, batch_id: Optional[str] = None, project_id: Optional[str] = None
    ) -> List[CertificateDocument]:
        return await self.store.find_certificates(batch_id=batch_id, project_id=project_id)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def reconcile_stale_batches(self) -> int:
        """
        Fail batches left in `processing` by a previous process. Their
        in-progress certificates are failed too so they can be retried.
        """
        cutoff = utcnow() - timedelta(minutes=self.config.STALE_BATCH_MINUTES)
        stale = await self.store.find_batches(BatchStatus.PROCESSING.value, updated_before=cutoff)
        reconciled = 0
        for batch in stale:
            if self.is_processing(batch.id):
                continue
            message = "Processing was interrupted; restart the batch to continue"
            interrupted = await self.store.update_batch_certificates(
                batch.id,
                CertificateStatus.IN_PROGRESS.value,
                status=CertificateStatus.FAILED,
                error_message=message,
                processing_completed_at=utcnow(),
            )
            await self.store.update_batch(batch.id, status=BatchStatus.FAILED, error_message=message)
            logger.warning(f"Batch {batch.id} was stuck in processing; marked failed ({interrupted} certificates interrupted)")
            reconciled += 1
        return reconciled

    async def join(self) -> None:
        """Wait for running batches and scheduled retry/reissue work to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
