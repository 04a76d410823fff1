"""Page rasters: record, upload, rasterize.

Recording a page only ever touches its geometry (url, width, height);
the page's assets, tombstones and legacy tags ride along untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from folio.blobstore import BlobStore
from folio.errors import ValidationError
from folio.ledger import upsert_page
from folio.lifecycle import load_checked, load_latest, require_number, require_page_number, require_text
from folio.manifest import ManifestStore
from folio.naming import page_path
from folio.raster import DEFAULT_ZOOM, rasterize

logger = logging.getLogger("folio")

PNG_CONTENT_TYPE = "image/png"


@dataclass
class PageRecord:
    page_number: int
    url: str
    width: float
    height: float


@dataclass
class PagesResult:
    manifest_url: str
    count: int = 0
    pages: list[dict[str, Any]] = field(default_factory=list)


def _positive(value: Any, name: str) -> float:
    n = require_number(value, name)
    if n <= 0:
        raise ValidationError(f"{name} must be positive")
    return n


def parse_page_record(value: Any, index: int | None = None) -> PageRecord:
    where = f"pages[{index}]." if index is not None else ""
    if not isinstance(value, dict):
        raise ValidationError(f"{where.rstrip('.') or 'page'} must be an object")
    return PageRecord(
        page_number=require_page_number(value.get("pageNumber"), f"{where}pageNumber"),
        url=require_text(value.get("url"), f"{where}url"),
        width=_positive(value.get("width"), f"{where}width"),
        height=_positive(value.get("height"), f"{where}height"),
    )


def record_page(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    page_number: Any,
    url: Any,
    width: Any,
    height: Any,
) -> PagesResult:
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    rec = parse_page_record({"pageNumber": page_number, "url": url, "width": width, "height": height})

    manifest = load_checked(store, project_id, manifest_url)
    upsert_page(manifest, rec.page_number, rec.url, rec.width, rec.height)
    store.append_debug(manifest, f"record page {rec.page_number} ({rec.width}x{rec.height})")
    return PagesResult(manifest_url=store.save(manifest), count=1)


def record_pages_bulk(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    pages: Any,
) -> PagesResult:
    """Record many pages in one save. All entries are validated first."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    if not isinstance(pages, list):
        raise ValidationError("pages must be a list")
    records = [parse_page_record(p, i) for i, p in enumerate(pages)]
    if not records:
        return PagesResult(manifest_url=manifest_url)

    latest = load_latest(store, project_id, manifest_url)
    for rec in records:
        upsert_page(latest, rec.page_number, rec.url, rec.width, rec.height)
    store.append_debug(latest, f"record {len(records)} pages")
    return PagesResult(manifest_url=store.save(latest), count=len(records))


def upload_page(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    page_number: Any,
    png_bytes: bytes,
    width: Any,
    height: Any,
) -> PagesResult:
    """Store a page PNG at its fixed path, then record it."""
    project_id = require_text(project_id, "projectId")
    page_number = require_page_number(page_number)
    if not png_bytes:
        raise ValidationError("empty page image")
    obj = blobs.put(page_path(project_id, page_number), png_bytes, PNG_CONTENT_TYPE)
    return record_page(store, project_id, manifest_url, page_number, obj.url, width, height)


def rasterize_pages(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    *,
    zoom: float = DEFAULT_ZOOM,
    limit: int = 0,
) -> PagesResult:
    """Render the source PDF, upload every page, record them in one save."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.source_pdf:
        raise ValidationError("no sourcePdf in manifest (upload the PDF first)")

    pdf = blobs.get(manifest.source_pdf["url"]).data
    rendered = rasterize(pdf, zoom=zoom, limit=limit)
    rows = []
    for page in rendered:
        obj = blobs.put(page_path(project_id, page.page_number), page.png, PNG_CONTENT_TYPE)
        rows.append(
            {"pageNumber": page.page_number, "url": obj.url, "width": page.width, "height": page.height}
        )
    logger.info("Rasterized %d pages for %s at zoom %.2f", len(rows), project_id, zoom)
    result = record_pages_bulk(store, project_id, manifest_url, rows)
    result.pages = rows
    return result
