"""
Page Splitter — rasterize a PDF into one PNG per page.

PDF: PyMuPDF (fitz) renders each page at RENDER_DPI. Every image goes to the
blob store under books/{id}/pages/page-NNN.png and every page gets a pending
PageExtractionResult stub. Either all pages get an image and a stub, or the
written images are removed again and PageSplitError is raised.
"""

import io
import logging
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image
from sqlalchemy.orm import Session

from database.models import PageExtractionResult, PageStatus
from services.blob_store import BlobStore, page_image_key

from .config import RENDER_DPI, MAX_VISION_IMAGE_DIM
from .exceptions import PageSplitError, EmptyDocumentError

log = logging.getLogger(__name__)


def render_pdf_pages(pdf_bytes: bytes, dpi: int = RENDER_DPI, page_numbers: Optional[List[int]] = None) -> List[Tuple[int, bytes]]:
    """
    Render PDF page(s) to PNG bytes.

    Args:
        pdf_bytes: Source PDF
        dpi: Render resolution
        page_numbers: Optional 1-based page numbers; if None, render all pages

    Returns:
        List of (page_no, png_bytes) with page_no 1-based.

    Raises:
        PageSplitError if the document cannot be opened or a page fails to render
        EmptyDocumentError if the PDF has no pages
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise PageSplitError(f"Could not open PDF: {e}") from e

    try:
        total = len(doc)
        if total == 0:
            raise EmptyDocumentError("PDF has no pages")
        indices = (
            [p - 1 for p in page_numbers if 1 <= p <= total]
            if page_numbers is not None
            else list(range(total))
        )
        mat = fitz.Matrix(dpi / 72, dpi / 72)
        results: List[Tuple[int, bytes]] = []
        for i in indices:
            try:
                pix = doc[i].get_pixmap(matrix=mat, alpha=False)
                results.append((i + 1, pix.tobytes("png")))
            except Exception as e:
                raise PageSplitError(f"Failed to render page {i + 1}: {e}") from e
        return results
    finally:
        doc.close()


def render_first_page(pdf_bytes: bytes, dpi: int = RENDER_DPI) -> Optional[bytes]:
    """First page PNG for metadata inference, or None if the PDF will not render."""
    try:
        pages = render_pdf_pages(pdf_bytes, dpi=dpi, page_numbers=[1])
    except Exception as e:
        log.warning("[PageSplitter] First page render failed: %s", e)
        return None
    return pages[0][1] if pages else None


def cap_image_size(png_bytes: bytes, max_dim: int = MAX_VISION_IMAGE_DIM) -> bytes:
    """
    Downscale a PNG so its longer side is at most max_dim, preserving aspect ratio.
    Returns the input unchanged when it already fits.
    """
    img = Image.open(io.BytesIO(png_bytes))
    w, h = img.size
    if w <= max_dim and h <= max_dim:
        return png_bytes
    ratio = min(max_dim / w, max_dim / h)
    resized = img.convert("RGB").resize(
        (max(1, int(w * ratio)), max(1, int(h * ratio))), Image.Resampling.LANCZOS
    )
    out = io.BytesIO()
    resized.save(out, format="PNG", optimize=True)
    return out.getvalue()


def split_document(
    db: Session,
    blob_store: BlobStore,
    book_id: int,
    pdf_bytes: bytes,
    dpi: int = RENDER_DPI,
) -> int:
    """
    Rasterize every page, store the images and create/update one stub per page.

    Returns:
        Number of pages

    Raises:
        PageSplitError / EmptyDocumentError (nothing is left behind on failure)
    """
    pages = render_pdf_pages(pdf_bytes, dpi=dpi)

    written: List[str] = []
    try:
        for page_no, png in pages:
            written.append(blob_store.put(page_image_key(book_id, page_no), png, content_type="image/png"))

        existing = {
            p.page_number: p
            for p in db.query(PageExtractionResult).filter(PageExtractionResult.book_id == book_id).all()
        }
        for page_no, _ in pages:
            key = page_image_key(book_id, page_no)
            row = existing.get(page_no)
            if row is None:
                db.add(PageExtractionResult(
                    book_id=book_id,
                    page_number=page_no,
                    page_image_key=key,
                    status=PageStatus.PENDING,
                    extracted_questions=[],
                    missing_questions=[],
                ))
            else:
                row.page_image_key = key
        db.commit()
    except Exception as e:
        db.rollback()
        for key in written:
            try:
                blob_store.delete(key)
            except Exception as cleanup_error:
                log.warning("[PageSplitter] Could not remove %s: %s", key, cleanup_error)
        raise PageSplitError(f"Failed to store page images: {e}") from e

    log.info("[PageSplitter] Book %d: split into %d pages", book_id, len(pages))
    return len(pages)
