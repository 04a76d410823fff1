"""Manifest data model.

The manifest is the only persisted aggregate. On the wire it is UTF-8 JSON
with camelCase keys and no version field; schema evolution is additive, so
every field except ``projectId`` is optional on read and unknown keys are
carried through ``extra`` untouched.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

STATUSES = ("empty", "uploaded", "processed")

DEBUG_LOG_MAX = 50

_MANIFEST_KEYS = {
    "projectId",
    "createdAt",
    "status",
    "sourcePdf",
    "extractedText",
    "formattedText",
    "docAiJson",
    "schemaResults",
    "pages",
    "settings",
    "debugLog",
}
_PAGE_KEYS = {"pageNumber", "url", "width", "height", "assets", "deletedAssetIds", "tags"}
_ASSET_KEYS = {"assetId", "url", "bbox", "tags", "tagRationale"}
_POINTER_FIELDS = (
    ("extracted_text", "extractedText"),
    ("formatted_text", "formattedText"),
    ("doc_ai_json", "docAiJson"),
    ("schema_results", "schemaResults"),
)


def now_iso() -> str:
    """Current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def _number(value: Any, default: float = 0) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(n):
        return default
    return int(n) if n.is_integer() else n


def _str_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(v) for v in value if isinstance(v, (str, int, float))]


def _extras(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


@dataclass
class BBox:
    """Pixel-space rectangle on a page raster."""

    x: float
    y: float
    w: float
    h: float

    @classmethod
    def zero(cls) -> BBox:
        return cls(0, 0, 0, 0)

    @classmethod
    def from_dict(cls, data: Any) -> BBox:
        if not isinstance(data, dict):
            return cls.zero()
        return cls(
            x=_number(data.get("x")),
            y=_number(data.get("y")),
            w=_number(data.get("w")),
            h=_number(data.get("h")),
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @property
    def area(self) -> float:
        return self.w * self.h


@dataclass
class PageAsset:
    """One cropped visual extracted from a page."""

    asset_id: str
    url: str
    bbox: BBox = field(default_factory=BBox.zero)
    tags: list[str] | None = None
    tag_rationale: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PageAsset:
        rationale = data.get("tagRationale")
        return cls(
            asset_id=str(data.get("assetId", "")),
            url=str(data.get("url") or ""),
            bbox=BBox.from_dict(data.get("bbox")),
            tags=_str_list(data.get("tags")),
            tag_rationale=rationale if isinstance(rationale, str) else None,
            extra=_extras(data, _ASSET_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "assetId": self.asset_id,
            "url": self.url,
            "bbox": self.bbox.to_dict(),
        }
        if self.tags is not None:
            out["tags"] = list(self.tags)
        if self.tag_rationale is not None:
            out["tagRationale"] = self.tag_rationale
        out.update(self.extra)
        return out


@dataclass
class PageImage:
    """One rendered page and the assets cropped from it."""

    page_number: int
    url: str = ""
    width: float = 0
    height: float = 0
    assets: list[PageAsset] = field(default_factory=list)
    deleted_asset_ids: list[str] = field(default_factory=list)
    tags: list[str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PageImage:
        raw_assets = data.get("assets")
        assets = [
            PageAsset.from_dict(a)
            for a in (raw_assets if isinstance(raw_assets, list) else [])
            if isinstance(a, dict) and a.get("assetId")
        ]
        return cls(
            page_number=int(_number(data.get("pageNumber"))),
            url=str(data.get("url") or ""),
            width=_number(data.get("width")),
            height=_number(data.get("height")),
            assets=assets,
            deleted_asset_ids=_str_list(data.get("deletedAssetIds")) or [],
            tags=_str_list(data.get("tags")),
            extra=_extras(data, _PAGE_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "pageNumber": self.page_number,
            "url": self.url,
            "width": self.width,
            "height": self.height,
            "assets": [a.to_dict() for a in self.assets],
            "deletedAssetIds": list(self.deleted_asset_ids),
        }
        if self.tags is not None:
            out["tags"] = list(self.tags)
        out.update(self.extra)
        return out

    def asset(self, asset_id: str) -> PageAsset | None:
        for a in self.assets:
            if a.asset_id == asset_id:
                return a
        return None


def default_settings() -> dict[str, Any]:
    """Settings text blobs a new project starts with."""
    return {
        "aiRules": 'You are the "Otherly Exec". Be strict and coherent. Do not invent details.',
        "uiFieldsJson": json.dumps(
            {
                "fields": [
                    {"key": "title", "label": "Title", "type": "string"},
                    {"key": "summary", "label": "Summary", "type": "text"},
                ]
            },
            indent=2,
        ),
        "taggingJson": json.dumps(
            {
                "rules": [
                    "Tags must be coherent with the PDF text context.",
                    "Prefer LoRA-friendly tokens (short, reusable).",
                    "Avoid full sentences. Avoid copyrighted names unless present in the source.",
                ],
                "max_tags_per_image": 25,
            },
            indent=2,
        ),
    }


@dataclass
class Manifest:
    """All durable state for one project."""

    project_id: str
    created_at: str = ""
    status: str = "empty"
    source_pdf: dict[str, str] | None = None
    extracted_text: dict[str, str] | None = None
    formatted_text: dict[str, str] | None = None
    doc_ai_json: dict[str, str] | None = None
    schema_results: dict[str, str] | None = None
    pages: list[PageImage] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    debug_log: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    # Storage version tag seen by the load that produced this object.
    version_tag: str | None = field(default=None, repr=False, compare=False)

    @classmethod
    def new(cls, project_id: str) -> Manifest:
        return cls(project_id=project_id, created_at=now_iso(), settings=default_settings())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        raw_pages = data.get("pages")
        pages = [
            PageImage.from_dict(p)
            for p in (raw_pages if isinstance(raw_pages, list) else [])
            if isinstance(p, dict) and _number(p.get("pageNumber")) > 0
        ]
        settings = data.get("settings")
        debug = data.get("debugLog")
        status = data.get("status")
        kwargs: dict[str, Any] = {}
        for attr, key in _POINTER_FIELDS:
            ptr = data.get(key)
            kwargs[attr] = dict(ptr) if isinstance(ptr, dict) and ptr.get("url") else None
        source = data.get("sourcePdf")
        return cls(
            project_id=str(data.get("projectId") or ""),
            created_at=str(data.get("createdAt") or ""),
            status=status if status in STATUSES else "empty",
            source_pdf=dict(source) if isinstance(source, dict) and source.get("url") else None,
            pages=pages,
            settings=dict(settings) if isinstance(settings, dict) else {},
            debug_log=[str(s) for s in debug] if isinstance(debug, list) else [],
            extra=_extras(data, _MANIFEST_KEYS),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "projectId": self.project_id,
            "createdAt": self.created_at,
            "status": self.status,
        }
        if self.source_pdf is not None:
            out["sourcePdf"] = dict(self.source_pdf)
        for attr, key in _POINTER_FIELDS:
            ptr = getattr(self, attr)
            if ptr is not None:
                out[key] = dict(ptr)
        out["pages"] = [p.to_dict() for p in self.pages]
        out["settings"] = dict(self.settings)
        out["debugLog"] = list(self.debug_log)
        out.update(self.extra)
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def page(self, page_number: int) -> PageImage | None:
        for p in self.pages:
            if p.page_number == page_number:
                return p
        return None

    def log(self, line: str, limit: int = DEBUG_LOG_MAX) -> None:
        """Prepend a timestamped audit line, keeping the newest ``limit``."""
        self.debug_log.insert(0, f"[{now_iso()}] {line}")
        del self.debug_log[limit:]
