"""
services/pdf_stamper.py
Stamps a verification QR code onto the first page of a recipient PDF.
- Placement comes in as percentages of page width/height
- The QR is drawn on a ReportLab overlay and merged with pypdf
"""
import io
from dataclasses import dataclass
from typing import Optional

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.core.config import settings
from app.core.exceptions import StampingError
from app.models.project_model import QrCoordinates
from app.services.qr_service import qr_data_url, render_qr_image
from app.utils.helpers import get_logger

logger = get_logger(__name__)


@dataclass
class StampResult:
    pdf_bytes: bytes
    qr_code_data: str
    verification_url: str


def build_verification_url(certificate_id: str, base_url: Optional[str] = None, timestamp_ms: Optional[int] = None) -> str:
    """Verification link for a certificate; republishing adds a timestamp."""
    base_url = (base_url or settings.VERIFICATION_BASE_URL).rstrip("/")
    url = f"{base_url}?id={certificate_id}"
    if timestamp_ms is not None:
        url += f"&t={timestamp_ms}"
    return url


def to_page_coordinates(placement: QrCoordinates, page_width: float, page_height: float) -> tuple[float, float]:
    """Convert percentage placement to absolute page units."""
    return (placement.x / 100) * page_width, (placement.y / 100) * page_height


def _load_pdf(source_pdf: bytes) -> PdfReader:
    if not source_pdf:
        raise StampingError("Source PDF is empty")
    try:
        reader = PdfReader(io.BytesIO(source_pdf))
        page_count = len(reader.pages)
    except Exception as e:
        raise StampingError(f"Source PDF could not be read: {e}") from e
    if page_count == 0:
        raise StampingError("Source PDF has no pages")
    return reader


def stamp_pdf(
    source_pdf: bytes,
    placement: Optional[QrCoordinates],
    verification_url: str,
    qr_size: Optional[float] = None,
) -> StampResult:
    """
    Embed a QR code for `verification_url` into the first page of `source_pdf`.

    Steps:
      1. Load the PDF and read the first page's size
      2. Convert the percentage placement to page coordinates
      3. Render the QR image (high error correction, fixed pixel size)
      4. Draw it on a one-page overlay and merge onto the first page
      5. Serialize the result

    Raises:
        StampingError: missing placement or unreadable PDF
    """
    if placement is None:
        raise StampingError("Project QR coordinates are not set")

    qr_size = qr_size or settings.QR_SIZE_POINTS
    reader = _load_pdf(source_pdf)

    # ── 1. First page geometry ────────────────────────────────────────────────
    box = reader.pages[0].mediabox
    page_width, page_height = float(box.width), float(box.height)
    origin_x, origin_y = float(box.left), float(box.bottom)

    # ── 2. Absolute position ──────────────────────────────────────────────────
    rel_x, rel_y = to_page_coordinates(placement, page_width, page_height)
    qr_x, qr_y = origin_x + rel_x, origin_y + rel_y
    logger.debug(f"Page {page_width}x{page_height} | QR at ({qr_x:.1f}, {qr_y:.1f})")

    # ── 3. QR image ───────────────────────────────────────────────────────────
    qr_img = render_qr_image(verification_url)

    # ── 4. Overlay + merge ────────────────────────────────────────────────────
    overlay_buffer = io.BytesIO()
    overlay = canvas.Canvas(overlay_buffer, pagesize=(origin_x + page_width, origin_y + page_height))
    overlay.drawImage(ImageReader(qr_img), qr_x, qr_y, width=qr_size, height=qr_size)
    overlay.save()
    overlay_buffer.seek(0)
    overlay_page = PdfReader(overlay_buffer).pages[0]

    writer = PdfWriter(clone_from=reader)
    writer.pages[0].merge_page(overlay_page)

    # ── 5. Serialize ──────────────────────────────────────────────────────────
    out = io.BytesIO()
    try:
        writer.write(out)
    except PyPdfError as e:
        raise StampingError(f"Stamped PDF could not be written: {e}") from e

    return StampResult(
        pdf_bytes=out.getvalue(),
        qr_code_data=qr_data_url(verification_url),
        verification_url=verification_url,
    )
