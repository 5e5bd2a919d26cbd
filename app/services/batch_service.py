"""
services/batch_service.py
Turns an uploaded ZIP (manifest + recipient PDFs) into a validated Batch
and, when validation passes, one pending Certificate per manifest row.
"""
import io
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import BatchNotFoundError, ProjectNotFoundError, ProjectNotReadyError
from app.models.batch_model import BatchDocument, BatchStatus, ValidationResult
from app.models.certificate_model import CertificateDocument, CertificateStatus
from app.services import manifest_validator
from app.storage.blob_store import batch_dir_key, source_pdf_key
from app.utils.helpers import generate_id, get_logger, safe_filename, summarize_names, utcnow

logger = get_logger(__name__)


@dataclass
class ZipContents:
    manifest_name: Optional[str] = None
    manifest_bytes: Optional[bytes] = None
    pdfs: Dict[str, bytes] = field(default_factory=dict)
    duplicate_pdfs: List[str] = field(default_factory=list)


def _is_junk(name: str) -> bool:
    base = safe_filename(name)
    return name.startswith("__MACOSX/") or base.startswith(".") or not base


def read_zip(zip_bytes: bytes) -> ZipContents:
    """
    Pull the manifest and PDFs out of an uploaded ZIP, keyed by base name.
    The first manifest-like file wins. PDFs sharing a base name are recorded
    in `duplicate_pdfs` and only the first is kept.

    Raises:
        zipfile.BadZipFile: not a ZIP archive
    """
    contents = ZipContents()
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        for info in zf.infolist():
            if info.is_dir() or _is_junk(info.filename):
                continue
            name = safe_filename(info.filename)
            lowered = name.lower()
            if lowered.endswith(".pdf"):
                if name in contents.pdfs:
                    if name not in contents.duplicate_pdfs:
                        contents.duplicate_pdfs.append(name)
                    continue
                contents.pdfs[name] = zf.read(info)
            elif contents.manifest_name is None and manifest_validator.is_manifest_file(lowered):
                contents.manifest_name = name
                contents.manifest_bytes = zf.read(info)
    return contents


class BatchService:
    def __init__(self, store, blobs, config: Optional[Settings] = None):
        self.store = store
        self.blobs = blobs
        self.config = config or default_settings

    def _validate(self, contents: ZipContents):
        return manifest_validator.validate_with_entries(
            contents.manifest_bytes,
            contents.pdfs.keys(),
            manifest_name=contents.manifest_name,
            max_certificates=self.config.MAX_CERTIFICATES,
            batch_size=self.config.BATCH_SIZE,
            minutes_per_certificate=self.config.PROCESSING_TIME_PER_CERT,
            column_match=self.config.MANIFEST_COLUMN_MATCH,
        )

    async def ingest_zip(self, project_id: str, zip_bytes: bytes, zip_name: str = "batch.zip") -> BatchDocument:
        """
        Validate an uploaded ZIP and persist the resulting batch.

        A batch is always stored: `pending` when validation passed (with its
        certificate records), `failed` otherwise (with none).
        """
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if not project.is_ready:
            raise ProjectNotReadyError(project_id)

        batch_id = generate_id()
        entries: List[manifest_validator.ManifestEntry] = []
        contents = ZipContents()
        try:
            contents = read_zip(zip_bytes)
        except zipfile.BadZipFile as e:
            logger.warning(f"Upload for project {project_id} is not a ZIP: {e}")
            validation = ValidationResult.failed("Uploaded file is not a valid ZIP archive")
        else:
            if contents.manifest_bytes is None:
                validation = ValidationResult.failed(
                    "No manifest file found in ZIP. Please include a certificate mapping file (.xlsx, .xls or .csv)."
                )
            else:
                validation, entries = self._validate(contents)
                if contents.duplicate_pdfs:
                    validation.errors.append(
                        f"Duplicate PDF file names in ZIP: {summarize_names(sorted(contents.duplicate_pdfs))}"
                    )
                    validation.is_valid = False

        zip_key = f"{batch_dir_key(project_id, batch_id)}/{safe_filename(zip_name) or 'batch.zip'}"
        await self.blobs.write_bytes(zip_key, zip_bytes)

        now = utcnow()
        batch = BatchDocument(
            id=batch_id,
            project_id=project_id,
            name=f"Batch {now.strftime('%Y-%m-%d %H:%M')}",
            total_certificates=validation.total_entries,
            status=BatchStatus.PENDING if validation.is_valid else BatchStatus.FAILED,
            zip_file_path=zip_key,
            manifest_filename=contents.manifest_name,
            validation_result=validation,
            error_message=None if validation.is_valid else "Validation failed",
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_batch(batch)

        if validation.is_valid:
            await self._create_certificates(batch, entries, contents.pdfs)

        logger.info(
            f"Batch {batch_id} for project {project_id}: {validation.total_entries} entries, status={batch.status}"
        )
        return batch

    async def _create_certificates(
        self,
        batch: BatchDocument,
        entries: List[manifest_validator.ManifestEntry],
        pdfs: Dict[str, bytes],
    ) -> List[CertificateDocument]:
        now = utcnow()
        certificates = []
        for entry in entries:
            await self.blobs.write_bytes(
                source_pdf_key(batch.project_id, batch.id, entry.filename), pdfs[entry.filename]
            )
            certificates.append(CertificateDocument(
                id=generate_id(),
                project_id=batch.project_id,
                batch_id=batch.id,
                certificate_id=entry.certificate_id,
                filename=entry.filename,
                row_number=entry.row_number,
                recipient_name=entry.recipient_name,
                recipient_email=entry.recipient_email,
                status=CertificateStatus.PENDING,
                created_at=now,
                updated_at=now,
            ))
        await self.store.insert_certificates(certificates)
        logger.info(f"Batch {batch.id}: {len(certificates)} certificate records created")
        return certificates

    async def list_batches(self, project_id: str) -> List[BatchDocument]:
        return await self.store.list_batches(project_id)

    async def get_batch(self, batch_id: str, project_id: Optional[str] = None) -> BatchDocument:
        batch = await self.store.get_batch(batch_id)
        if batch is None or (project_id is not None and batch.project_id != project_id):
            raise BatchNotFoundError(batch_id)
        return batch
