"""Document AI responses: parsing and the REST client.

The OCR service has answered in more than one shape over time, so a
stored ``docai.json`` is decoded into one of three variants:

- :class:`DocumentEnvelope` - ``{"document": {"text": ..., "pages": [...]}}``
- :class:`BareDocument` - ``{"text": ..., "pages": [...]}`` at the top level
- :class:`UnknownShape` - anything else; yields no text and no pages

Callers only go through :func:`page_text`, :func:`visual_boxes` and
:func:`full_text`, which treat the variants uniformly.
"""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import httpx

from folio.errors import UpstreamFetchError
from folio.http import error_text, post_with_retry
from folio.models import BBox

logger = logging.getLogger("folio")

FALLBACK_ELEMENT_KEYS = ("blocks", "paragraphs", "lines", "tokens")


@dataclass
class DocumentEnvelope:
    text: str
    pages: list[dict[str, Any]]
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass
class BareDocument:
    text: str
    pages: list[dict[str, Any]]
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass
class UnknownShape:
    raw: Any = field(repr=False, default=None)


DocAiDocument = Union[DocumentEnvelope, BareDocument, UnknownShape]


def _pages_of(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [p if isinstance(p, dict) else {} for p in value]


def parse_docai(raw: Any) -> DocAiDocument:
    """Classify a decoded document-AI JSON value."""
    if isinstance(raw, dict):
        doc = raw.get("document")
        if isinstance(doc, dict):
            text = doc.get("text")
            return DocumentEnvelope(
                text=text if isinstance(text, str) else "",
                pages=_pages_of(doc.get("pages")),
                raw=raw,
            )
        if "pages" in raw or "text" in raw:
            text = raw.get("text")
            return BareDocument(
                text=text if isinstance(text, str) else "",
                pages=_pages_of(raw.get("pages")),
                raw=raw,
            )
    logger.warning("Unrecognised document-AI shape: %s", type(raw).__name__)
    return UnknownShape(raw=raw)


def full_text(doc: DocAiDocument) -> str:
    if isinstance(doc, UnknownShape):
        return ""
    return doc.text


def doc_pages(doc: DocAiDocument) -> list[dict[str, Any]]:
    if isinstance(doc, UnknownShape):
        return []
    return doc.pages


def _index(value: Any) -> int:
    try:
        n = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, n)


def page_text(doc: DocAiDocument, page_number: int) -> str:
    """Text of one page (1-based), sliced out of the full text by its anchors."""
    pages = doc_pages(doc)
    text = full_text(doc)
    if not text or page_number < 1 or page_number > len(pages):
        return ""
    layout = pages[page_number - 1].get("layout")
    anchor = layout.get("textAnchor") if isinstance(layout, dict) else None
    segments = anchor.get("textSegments") if isinstance(anchor, dict) else None
    if not isinstance(segments, list):
        return ""
    parts = []
    for seg in segments:
        if not isinstance(seg, dict):
            continue
        start = _index(seg.get("startIndex"))
        end = max(start, _index(seg.get("endIndex")))
        parts.append(text[start:end])
    return "".join(parts).strip()


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def box_from_poly(poly: Any, width: float, height: float) -> BBox | None:
    """Pixel bbox enclosing a bounding polygon.

    ``normalizedVertices`` are scaled by the page size; plain ``vertices``
    are taken as pixels already.
    """
    if not isinstance(poly, dict):
        return None
    normalized = isinstance(poly.get("normalizedVertices"), list)
    verts = poly.get("normalizedVertices") if normalized else poly.get("vertices")
    if not isinstance(verts, list) or not verts:
        return None
    xs, ys = [], []
    for v in verts:
        if not isinstance(v, dict):
            continue
        x = v.get("x") if isinstance(v.get("x"), (int, float)) else 0
        y = v.get("y") if isinstance(v.get("y"), (int, float)) else 0
        xs.append(x * width if normalized else x)
        ys.append(y * height if normalized else y)
    if not xs:
        return None
    x = _clamp(math.floor(min(xs)), 0, width - 1)
    y = _clamp(math.floor(min(ys)), 0, height - 1)
    w = _clamp(math.ceil(max(xs) - min(xs)), 1, width - x)
    h = _clamp(math.ceil(max(ys) - min(ys)), 1, height - y)
    return BBox(int(x), int(y), int(w), int(h))


def _element_boxes(elements: Any, width: float, height: float) -> list[BBox]:
    out = []
    for el in elements if isinstance(elements, list) else []:
        if not isinstance(el, dict):
            continue
        layout = el.get("layout")
        poly = layout.get("boundingPoly") if isinstance(layout, dict) else None
        box = box_from_poly(poly, width, height)
        if box is not None:
            out.append(box)
    return out


def visual_boxes(doc: DocAiDocument, page_number: int, width: float, height: float) -> list[BBox]:
    """Raw (unfiltered) pixel boxes for one page's visual elements.

    Falls back to text-structure elements when the page lists no visual
    elements.
    """
    pages = doc_pages(doc)
    if page_number < 1 or page_number > len(pages) or width <= 0 or height <= 0:
        return []
    page = pages[page_number - 1]
    boxes = _element_boxes(page.get("visualElements"), width, height)
    if boxes:
        return boxes
    for key in FALLBACK_ELEMENT_KEYS:
        boxes.extend(_element_boxes(page.get(key), width, height))
    return boxes


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class ProcessResult:
    full_text: str
    raw: Any


class DocumentProcessor(Protocol):
    def process(self, pdf_bytes: bytes) -> ProcessResult: ...


class DocAiProcessor:
    """Google Document AI ``:process`` endpoint over REST.

    ``endpoint`` is the full URL, e.g.
    ``https://eu-documentai.googleapis.com/v1/projects/P/locations/eu/processors/ID:process``.
    """

    service = "Document AI"

    def __init__(self, endpoint: str, token: str, *, timeout: float = 120.0):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout

    def process(self, pdf_bytes: bytes) -> ProcessResult:
        payload = {
            "rawDocument": {
                "content": base64.b64encode(pdf_bytes).decode("ascii"),
                "mimeType": "application/pdf",
            }
        }
        try:
            resp = post_with_retry(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success:
            raise UpstreamFetchError(self.service, resp.status_code, error_text(resp))
        raw = resp.json()
        text = full_text(parse_docai(raw))
        logger.info("Document AI returned %d chars", len(text))
        return ProcessResult(full_text=text, raw=raw)
