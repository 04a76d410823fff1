"""Blob path naming convention for Folio projects.

Single source of truth for where things live in blob storage. Every
module that builds or parses a storage path goes through here.

Layout::

  projects/{pid}/manifest.json
  projects/{pid}/source/source.pdf
  projects/{pid}/extracted/text.txt
  projects/{pid}/extracted/docai.json
  projects/{pid}/schema-results.json
  projects/{pid}/pages/page-{n}.png
  projects/{pid}/assets/p{n}/p{n}-img{NN}[-suffix].png

Asset uploads may carry a random suffix (``p3-img02-Xk81Qa.png``); the
suffix is never part of the asset id.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

ROOT = "projects/"

_PAGE_RE = re.compile(r"^projects/([^/]+)/pages/page-(\d+)\.png$", re.IGNORECASE)
_ASSET_RE = re.compile(
    r"^projects/([^/]+)/assets/p(\d+)/(p(\d+)-img(\d+))(?:-[A-Za-z0-9_]+)?\.png$",
    re.IGNORECASE,
)
_ASSET_ID_RE = re.compile(r"^p(\d+)-img(\d+)$")


@dataclass(frozen=True)
class PagePath:
    """Identity decoded from a page raster path."""

    project_id: str
    page_number: int


@dataclass(frozen=True)
class AssetPath:
    """Identity decoded from an asset crop path."""

    project_id: str
    page_number: int
    asset_id: str


def project_prefix(project_id: str) -> str:
    return f"{ROOT}{project_id}/"


def manifest_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/manifest.json"


def is_manifest_path(pathname: str) -> bool:
    return pathname.startswith(ROOT) and pathname.endswith("/manifest.json")


def source_pdf_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/source/source.pdf"


def extracted_text_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/extracted/text.txt"


def docai_json_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/extracted/docai.json"


def formatted_text_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/extracted/formatted.txt"


def schema_results_path(project_id: str) -> str:
    return f"{ROOT}{project_id}/schema-results.json"


def pages_prefix(project_id: str) -> str:
    return f"{ROOT}{project_id}/pages/"


def assets_prefix(project_id: str) -> str:
    return f"{ROOT}{project_id}/assets/"


def page_path(project_id: str, page_number: int) -> str:
    return f"{pages_prefix(project_id)}page-{page_number}.png"


def asset_id(page_number: int, index: int) -> str:
    """Build ``p{n}-img{NN}`` (index zero-padded to two digits)."""
    return f"p{page_number}-img{index:02d}"


def asset_path(project_id: str, page_number: int, asset: str) -> str:
    return f"{assets_prefix(project_id)}p{page_number}/{asset}.png"


def asset_prefix(project_id: str, page_number: int, asset: str) -> str:
    """Listing prefix covering every upload of one logical asset.

    Broader than the asset itself (``p1-img10`` also matches ``p1-img100``);
    filter results through :func:`parse_asset_path`.
    """
    return f"{assets_prefix(project_id)}p{page_number}/{asset}"


def parse_asset_id(value: str) -> tuple[int, int] | None:
    """Decode ``p{n}-img{NN}`` into ``(page_number, index)``."""
    m = _ASSET_ID_RE.match(value)
    if not m:
        return None
    page = int(m.group(1))
    if page <= 0:
        return None
    return page, int(m.group(2))


def parse_page_path(pathname: str) -> PagePath | None:
    """Decode a page raster path. Returns None if it doesn't follow the layout."""
    m = _PAGE_RE.match(pathname)
    if not m:
        return None
    page = int(m.group(2))
    if page <= 0:
        return None
    return PagePath(project_id=m.group(1), page_number=page)


def parse_asset_path(pathname: str) -> AssetPath | None:
    """Decode an asset crop path.

    Objects whose asset id names a different page than their folder are
    rejected, as are non-positive page numbers.
    """
    m = _ASSET_RE.match(pathname)
    if not m:
        return None
    folder_page = int(m.group(2))
    id_page = int(m.group(4))
    if folder_page <= 0 or folder_page != id_page:
        return None
    return AssetPath(project_id=m.group(1), page_number=folder_page, asset_id=m.group(3))
