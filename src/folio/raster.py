"""PDF rasterization and cropping using PyMuPDF (fitz).

Pages are rendered to PNG at a zoom factor (2.0 = 144 dpi). Asset crops
are taken from the PDF itself, not the page PNG: the pixel bbox recorded
against a page raster is mapped back to PDF points through that raster's
width, and the clip is rendered at the same zoom.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import fitz  # PyMuPDF

from folio.errors import NotFoundError, ValidationError
from folio.models import BBox

DEFAULT_ZOOM = 2.0


@dataclass
class RenderedPage:
    page_number: int
    png: bytes
    width: int
    height: int


@contextmanager
def _open(pdf: bytes) -> Iterator[fitz.Document]:
    try:
        doc = fitz.open(stream=pdf, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise ValidationError(f"source PDF could not be opened ({e})") from e
    try:
        yield doc
    finally:
        doc.close()


def page_count(pdf: bytes) -> int:
    with _open(pdf) as doc:
        return len(doc)


def rasterize(pdf: bytes, zoom: float = DEFAULT_ZOOM, limit: int = 0) -> list[RenderedPage]:
    """Render pages 1..N (all of them when ``limit`` is 0) to PNG."""
    if zoom <= 0:
        raise ValidationError("zoom must be positive")
    matrix = fitz.Matrix(zoom, zoom)
    out = []
    with _open(pdf) as doc:
        total = len(doc) if limit <= 0 else min(limit, len(doc))
        for i in range(total):
            pix = doc[i].get_pixmap(matrix=matrix, alpha=False)
            out.append(RenderedPage(i + 1, pix.tobytes("png"), pix.width, pix.height))
    return out


def crop(
    pdf: bytes, page_number: int, bbox: BBox, page_width: float, zoom: float = DEFAULT_ZOOM
) -> bytes:
    """Render the region ``bbox`` (pixels on a raster ``page_width`` wide) to PNG.

    ``zoom`` is only used when the raster width is unknown (0).
    """
    if bbox.w <= 0 or bbox.h <= 0:
        raise ValidationError(f"empty crop box on page {page_number}")
    with _open(pdf) as doc:
        if page_number < 1 or page_number > len(doc):
            raise NotFoundError(
                f"Page {page_number} of the source PDF",
                hint=f"The document has {len(doc)} pages.",
            )
        page = doc[page_number - 1]
        if page_width > 0:
            zoom = page_width / page.rect.width
        clip = fitz.Rect(
            bbox.x / zoom,
            bbox.y / zoom,
            (bbox.x + bbox.w) / zoom,
            (bbox.y + bbox.h) / zoom,
        ) & page.rect
        if clip.is_empty:
            raise ValidationError(f"crop box lies outside page {page_number}")
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), clip=clip, alpha=False)
        return pix.tobytes("png")
