"""Visual asset detection and extraction.

Two sources of boxes per page:

- the stored document-AI JSON (``source="docai"``), whose visual elements
  are already laid out on the page;
- a :class:`Detector`, by default :class:`GeminiDetector`, which looks at
  the page PNG and answers with normalised ``{x, y, w, h}`` boxes.

Either way boxes are filtered by area, de-duplicated by overlap and capped
per page. :func:`detect_assets` only reports; :func:`extract_assets` crops
each box from the source PDF, uploads it and records the crops.
"""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

from folio.blobstore import BlobStore
from folio.cancellation import check_cancelled
from folio.docai import visual_boxes
from folio.errors import ValidationError
from folio.gemini import GeminiClient, parse_json_reply
from folio.ledger import next_asset_index
from folio.lifecycle import (
    BulkRecordResult,
    load_checked,
    load_docai,
    record_assets_bulk,
    require_text,
)
from folio.manifest import ManifestStore
from folio.models import BBox
from folio.naming import asset_id as make_asset_id
from folio.naming import asset_path
from folio.raster import DEFAULT_ZOOM, crop

logger = logging.getLogger("folio")

MAX_BOXES = 25
MIN_AREA_RATIO = 0.02
MAX_AREA_RATIO = 0.92
MIN_SIDE_PX = 50
IOU_THRESHOLD = 0.85


# ---------------------------------------------------------------------------
# Box geometry
# ---------------------------------------------------------------------------


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def normalized_to_pixels(x: float, y: float, w: float, h: float, width: float, height: float) -> BBox:
    """Scale a 0-1 box to pixels and clamp it onto the page."""
    px = _clamp(math.floor(x * width), 0, width - 1)
    py = _clamp(math.floor(y * height), 0, height - 1)
    pw = _clamp(math.ceil(w * width), 1, width)
    ph = _clamp(math.ceil(h * height), 1, height)
    return BBox(int(px), int(py), int(pw), int(ph))


def iou(a: BBox, b: BBox) -> float:
    ix = max(0, min(a.x + a.w, b.x + b.w) - max(a.x, b.x))
    iy = max(0, min(a.y + a.h, b.y + b.h) - max(a.y, b.y))
    inter = ix * iy
    union = a.area + b.area - inter
    return 0.0 if union <= 0 else inter / union


def dedupe(boxes: list[BBox], threshold: float = IOU_THRESHOLD) -> list[BBox]:
    """Keep each box unless it overlaps an earlier kept one above ``threshold``."""
    kept: list[BBox] = []
    for b in boxes:
        if all(iou(b, k) <= threshold for k in kept):
            kept.append(b)
    return kept


def filter_boxes(
    boxes: list[BBox],
    width: float,
    height: float,
    *,
    min_side: float = 0,
    limit: int = MAX_BOXES,
) -> list[BBox]:
    """Area filter, largest first, overlap de-dup, cap."""
    page_area = width * height
    kept = [
        b
        for b in boxes
        if page_area * MIN_AREA_RATIO <= b.area <= page_area * MAX_AREA_RATIO
        and b.w >= min_side
        and b.h >= min_side
    ]
    kept.sort(key=lambda b: b.area, reverse=True)
    return dedupe(kept)[:limit]


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


class Detector(Protocol):
    def detect(
        self, png_bytes: bytes, page_number: int, width: float, height: float, rules: str = ""
    ) -> list[BBox]: ...


def boxes_from_reply(parsed: Any, width: float, height: float) -> list[BBox]:
    if isinstance(parsed, dict):
        parsed = parsed.get("boxes")
    out = []
    for item in parsed if isinstance(parsed, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            x, y, w, h = (float(item[k]) for k in ("x", "y", "w", "h"))
        except (KeyError, TypeError, ValueError):
            continue
        if not all(math.isfinite(v) for v in (x, y, w, h)) or w <= 0 or h <= 0:
            continue
        out.append(normalized_to_pixels(x, y, w, h, width, height))
    return out


def build_prompt(page_number: int, rules: str = "", max_boxes: int = MAX_BOXES) -> str:
    lines = [
        "You will receive a PDF page as an image. Detect visual regions that are "
        "photos/figures/diagrams (not plain text).",
        'Return ONLY JSON: an array of objects [{"x": number, "y": number, "w": number, '
        '"h": number}] with values normalized 0-1 relative to width/height.',
        "Rules:",
        f"- Up to {max_boxes} boxes",
        "- Omit boxes smaller than 2% of page area",
        "- Omit boxes covering ~full page",
        "- Do not include text-only blocks",
        "- Respond with JSON only, no markdown, no prose",
    ]
    if rules.strip():
        lines.append(f"Project detection rules: {rules.strip()}")
    lines.append(f"Context: pageNumber {page_number}")
    return "\n".join(lines)


class GeminiDetector(GeminiClient):
    """Finds visual regions on a page PNG."""

    def detect(
        self, png_bytes: bytes, page_number: int, width: float, height: float, rules: str = ""
    ) -> list[BBox]:
        contents = [
            {
                "role": "user",
                "parts": [
                    {"text": build_prompt(page_number, rules)},
                    {
                        "inlineData": {
                            "mimeType": "image/png",
                            "data": base64.b64encode(png_bytes).decode("ascii"),
                        }
                    },
                ],
            }
        ]
        text = self.generate(contents, generation_config={"temperature": 0.2, "maxOutputTokens": 400})
        boxes = boxes_from_reply(parse_json_reply(text), width, height)
        return filter_boxes(boxes, width, height)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class PageBoxes:
    page_number: int
    boxes: list[BBox] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"pageNumber": self.page_number, "boxes": [b.to_dict() for b in self.boxes]}


@dataclass
class ExtractResult:
    manifest_url: str
    pages: int = 0
    recorded: int = 0
    dropped: int = 0


def _detection_rules(settings: dict[str, Any]) -> str:
    rules = settings.get("detectionRulesJson")
    return rules if isinstance(rules, str) else ""


def detect_assets(
    store: ManifestStore,
    blobs: BlobStore,
    detector: Detector | None,
    project_id: str,
    manifest_url: str,
    *,
    limit_pages: int = 0,
    source: str = "detector",
) -> list[PageBoxes]:
    """Propose asset boxes for each page. Nothing is saved."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    if source not in ("detector", "docai"):
        raise ValidationError("source must be 'detector' or 'docai'")
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.pages:
        raise ValidationError("no pages in manifest (rasterize the source first)")
    pages = manifest.pages[:limit_pages] if limit_pages > 0 else manifest.pages

    results = []
    if source == "docai":
        if not manifest.doc_ai_json:
            raise ValidationError("no docAiJson found (process the document first)")
        doc = load_docai(blobs, manifest)
        for page in pages:
            boxes = visual_boxes(doc, page.page_number, page.width, page.height)
            results.append(
                PageBoxes(
                    page.page_number,
                    filter_boxes(boxes, page.width, page.height, min_side=MIN_SIDE_PX),
                )
            )
        return results

    if detector is None:
        raise ValidationError("no detector configured")
    rules = _detection_rules(manifest.settings)
    for page in pages:
        if not page.url or not page.width or not page.height:
            continue
        check_cancelled(f"detecting page {page.page_number}")
        png = blobs.get(page.url).data
        boxes = detector.detect(png, page.page_number, page.width, page.height, rules)
        logger.debug("Page %d: %d boxes", page.page_number, len(boxes))
        results.append(PageBoxes(page.page_number, boxes))
    return results


def extract_assets(
    store: ManifestStore,
    blobs: BlobStore,
    detector: Detector | None,
    project_id: str,
    manifest_url: str,
    *,
    limit_pages: int = 0,
    source: str = "detector",
    zoom: float = DEFAULT_ZOOM,
) -> ExtractResult:
    """Detect, crop, upload and record assets page by page.

    New ids continue above every live and deleted id on the page, so a
    fresh crop never lands on a tombstone.
    """
    detections = detect_assets(
        store, blobs, detector, project_id, manifest_url, limit_pages=limit_pages, source=source
    )
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.source_pdf:
        raise ValidationError("no sourcePdf in manifest (upload the PDF first)")
    pdf = blobs.get(manifest.source_pdf["url"]).data

    url = manifest_url
    out = ExtractResult(manifest_url=url)
    for det in detections:
        page = manifest.page(det.page_number)
        if page is None or not det.boxes:
            continue
        check_cancelled(f"cropping page {det.page_number}")
        start = next_asset_index(page)
        records = []
        for i, box in enumerate(det.boxes):
            aid = make_asset_id(det.page_number, start + i)
            png = crop(pdf, det.page_number, box, page.width, zoom=zoom)
            obj = blobs.put(
                asset_path(project_id, det.page_number, aid),
                png,
                "image/png",
                add_random_suffix=True,
            )
            records.append({"assetId": aid, "url": obj.url, "bbox": box.to_dict()})
        bulk: BulkRecordResult = record_assets_bulk(store, project_id, url, det.page_number, records)
        url = bulk.manifest_url
        out.pages += 1
        out.recorded += bulk.count - bulk.dropped
        out.dropped += bulk.dropped
    out.manifest_url = url
    logger.info("Extracted %d assets from %d pages (zoom %.2f)", out.recorded, out.pages, zoom)
    return out
