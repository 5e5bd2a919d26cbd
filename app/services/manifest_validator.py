"""
services/manifest_validator.py
Parses the Excel/CSV manifest of a batch upload and cross-checks it
against the PDF files found in the ZIP.

Nothing in here raises for bad input: every problem ends up in the
returned ValidationResult.
"""
import io
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import pandas as pd

from app.core.config import settings
from app.models.batch_model import BatchBreakdown, ValidationResult
from app.utils.helpers import get_logger, summarize_names

logger = get_logger(__name__)

MANIFEST_EXTENSIONS = (".xlsx", ".xls", ".csv")

# Substring mode: a header matches if it contains any of these.
_SUBSTRING_KEYS = {
    "certificate_id": ("certificateid", "certificate_id"),
    "filename": ("filename", "file_name"),
    "recipient_name": ("name", "recipient"),
    "recipient_email": ("email",),
}

# Exact mode: a header matches if it equals one of these (case-insensitive).
_EXACT_KEYS = {
    "certificate_id": ("certificateid", "certificate_id", "certificate id"),
    "filename": ("filename", "file_name", "file name"),
    "recipient_name": ("name", "recipient", "recipientname", "recipient_name", "recipient name"),
    "recipient_email": ("email", "e-mail", "recipientemail", "recipient_email", "recipient email"),
}


@dataclass
class ManifestEntry:
    certificate_id: str
    filename: str
    row_number: int
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None


@dataclass
class ManifestColumns:
    certificate_id: Optional[str] = None
    filename: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    missing: List[str] = field(default_factory=list)


def is_manifest_file(name: str) -> bool:
    return name.lower().endswith(MANIFEST_EXTENSIONS)


def _header_matches(header: str, role: str, mode: str) -> bool:
    header = header.strip().lower()
    if mode == "exact":
        return header in _EXACT_KEYS[role]
    return any(key in header for key in _SUBSTRING_KEYS[role])


def discover_columns(headers: Iterable[object], mode: str = "substring") -> ManifestColumns:
    """Work out which headers hold the certificate ID, filename and optional recipient details."""
    headers = [str(h) for h in headers]
    columns = ManifestColumns()
    for role in ("certificate_id", "filename", "recipient_email", "recipient_name"):
        taken = {columns.certificate_id, columns.filename, columns.recipient_email}
        for header in headers:
            if header in taken:
                continue
            if _header_matches(header, role, mode):
                setattr(columns, role, header)
                break
    if columns.certificate_id is None:
        columns.missing.append("certificateId")
    if columns.filename is None:
        columns.missing.append("filename")
    return columns


def read_manifest(manifest_bytes: bytes, manifest_name: str = "manifest.xlsx") -> Optional[pd.DataFrame]:
    """
    Load the first sheet of the manifest as strings. Only empty cells
    count as missing; values such as "NA" or "null" are kept as text.
    Returns None when the workbook has no sheets.
    """
    buffer = io.BytesIO(manifest_bytes)
    if manifest_name.lower().endswith(".csv"):
        return pd.read_csv(buffer, dtype=str, keep_default_na=False, na_values=[""])

    workbook = pd.ExcelFile(buffer)
    if not workbook.sheet_names:
        return None
    return workbook.parse(workbook.sheet_names[0], dtype=str, keep_default_na=False, na_values=[""])


def _cell(row: pd.Series, column: Optional[str]) -> Optional[str]:
    if column is None:
        return None
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    return str(value)


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def extract_entries(df: pd.DataFrame, columns: ManifestColumns) -> Tuple[List[ManifestEntry], List[str]]:
    """
    Walk the manifest rows, keeping the first occurrence of each certificate
    ID and filename. Row numbers are spreadsheet rows (header is row 1).
    """
    entries: List[ManifestEntry] = []
    errors: List[str] = []
    seen_ids: set[str] = set()
    seen_filenames: set[str] = set()

    for index, row in df.iterrows():
        row_number = int(index) + 2
        raw_id = _cell(row, columns.certificate_id)
        raw_filename = _cell(row, columns.filename)

        if raw_id is None or raw_filename is None:
            errors.append(f"Row {row_number}: Missing certificate ID or filename")
            continue

        certificate_id = raw_id.strip()
        filename = raw_filename.strip()
        if not certificate_id or not filename:
            errors.append(f"Row {row_number}: Empty certificate ID or filename")
            continue

        if certificate_id in seen_ids:
            errors.append(f"Row {row_number}: Duplicate certificate ID: {certificate_id}")
            continue
        if filename in seen_filenames:
            errors.append(f"Row {row_number}: Duplicate filename: {filename}")
            continue

        seen_ids.add(certificate_id)
        seen_filenames.add(filename)

        name = _cell(row, columns.recipient_name)
        email = _cell(row, columns.recipient_email)
        entries.append(ManifestEntry(
            certificate_id=certificate_id,
            filename=filename,
            row_number=row_number,
            recipient_name=_optional(name),
            recipient_email=_optional(email.lower() if email else None),
        ))

    return entries, errors


def calculate_batch_breakdown(
    total: int,
    batch_size: Optional[int] = None,
    minutes_per_certificate: Optional[float] = None,
) -> List[BatchBreakdown]:
    """Split `total` certificates into consecutive chunks of at most `batch_size`."""
    batch_size = batch_size or settings.BATCH_SIZE
    if minutes_per_certificate is None:
        minutes_per_certificate = settings.PROCESSING_TIME_PER_CERT

    chunks: List[BatchBreakdown] = []
    remaining = total
    while remaining > 0:
        count = min(remaining, batch_size)
        chunks.append(BatchBreakdown(
            batch_number=len(chunks) + 1,
            certificate_count=count,
            estimated_time=math.ceil(count * minutes_per_certificate),
        ))
        remaining -= count
    return chunks


def validate_with_entries(
    manifest_bytes: bytes,
    pdf_filenames: Iterable[str],
    manifest_name: str = "manifest.xlsx",
    max_certificates: Optional[int] = None,
    batch_size: Optional[int] = None,
    minutes_per_certificate: Optional[float] = None,
    column_match: Optional[str] = None,
) -> Tuple[ValidationResult, List[ManifestEntry]]:
    """
    Validate a manifest against the ZIP's PDF names and return the report
    together with the accepted manifest entries.
    """
    max_certificates = max_certificates or settings.MAX_CERTIFICATES
    if minutes_per_certificate is None:
        minutes_per_certificate = settings.PROCESSING_TIME_PER_CERT
    column_match = column_match or settings.MANIFEST_COLUMN_MATCH

    try:
        df = read_manifest(manifest_bytes, manifest_name)
        if df is None:
            return ValidationResult.failed("Manifest file has no worksheets"), []

        df = df.dropna(how="all")
        if df.empty:
            return ValidationResult.failed("Manifest file is empty"), []

        columns = discover_columns(df.columns, column_match)
        if columns.missing:
            return ValidationResult.failed(
                f"Manifest file missing required columns: {', '.join(columns.missing)}"
            ), []

        entries, errors = extract_entries(df, columns)
    except Exception as e:
        logger.error(f"Manifest parsing failed: {e}")
        return ValidationResult.failed(f"Failed to read manifest file: {e}"), []

    if len(entries) > max_certificates:
        errors.append(f"Too many certificates: {len(entries)}. Maximum allowed: {max_certificates}")

    pdf_set = set(pdf_filenames)
    manifest_filenames = {entry.filename for entry in entries}
    missing_pdfs = [entry.filename for entry in entries if entry.filename not in pdf_set]
    extra_pdfs = sorted(name for name in pdf_set if name not in manifest_filenames)

    warnings: List[str] = []
    if missing_pdfs:
        errors.append(f"Missing PDF files: {summarize_names(missing_pdfs)}")
    if extra_pdfs:
        warnings.append(f"Extra PDF files not in manifest: {summarize_names(extra_pdfs)}")

    valid_records = len(entries) - len(missing_pdfs)
    result = ValidationResult(
        is_valid=not errors and not missing_pdfs,
        total_entries=len(entries),
        valid_records=valid_records,
        invalid_records=len(entries) - valid_records,
        estimated_processing_time=math.ceil(valid_records * minutes_per_certificate),
        errors=errors,
        warnings=warnings,
        missing_pdfs=missing_pdfs,
        extra_pdfs=extra_pdfs,
        batch_breakdown=calculate_batch_breakdown(valid_records, batch_size, minutes_per_certificate),
    )
    logger.info(
        f"Manifest validated: {result.total_entries} entries, {result.valid_records} valid, "
        f"{len(errors)} errors, valid={result.is_valid}"
    )
    return result, entries


def validate(manifest_bytes: bytes, pdf_filenames: Iterable[str], **options) -> ValidationResult:
    """Validate a manifest against the set of PDF names in the ZIP."""
    result, _ = validate_with_entries(manifest_bytes, pdf_filenames, **options)
    return result
