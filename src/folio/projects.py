"""Project-level operations: create, list, read, delete, source, process, settings."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from folio.blobstore import BlobStore
from folio.docai import DocumentProcessor
from folio.errors import ValidationError
from folio.lifecycle import load_checked, load_latest, require_text
from folio.manifest import ManifestStore
from folio.naming import (
    ROOT,
    docai_json_path,
    extracted_text_path,
    is_manifest_path,
    project_prefix,
    schema_results_path,
    source_pdf_path,
)

logger = logging.getLogger("folio")

# Settings that must hold JSON. taggingJson is checked whenever given;
# the others only when non-empty.
JSON_SETTINGS = ("taggingJson", "schemaJson", "completenessRules", "detectionRulesJson")
TEXT_SETTINGS = ("aiRules", "uiFieldsJson")


@dataclass
class ProjectResult:
    manifest_url: str
    project_id: str = ""


@dataclass
class SourceResult:
    manifest_url: str
    source_pdf_url: str


@dataclass
class ProcessOutcome:
    manifest_url: str
    extracted_text_url: str
    doc_ai_json_url: str
    text_length: int = 0


@dataclass
class SchemaResultsOutcome:
    manifest_url: str
    schema_results_url: str


def create_project(store: ManifestStore) -> ProjectResult:
    project_id = str(uuid.uuid4())
    manifest = store.new_manifest(project_id)
    store.append_debug(manifest, "project created")
    url = store.save(manifest)
    logger.info("Created project %s", project_id)
    return ProjectResult(manifest_url=url, project_id=project_id)


def list_projects(store: ManifestStore, blobs: BlobStore) -> list[dict[str, Any]]:
    """One summary row per readable manifest under ``projects/``, newest first."""
    rows = []
    for obj in blobs.list_all(ROOT):
        if not is_manifest_path(obj.pathname):
            continue
        manifest = store.load_if_exists(obj.url)
        if manifest is None:
            continue
        rows.append(
            {
                "projectId": manifest.project_id,
                "manifestUrl": obj.url,
                "createdAt": manifest.created_at,
                "status": manifest.status,
                "filename": (manifest.source_pdf or {}).get("filename") or "(no source)",
                "pagesCount": len(manifest.pages),
                "hasText": bool(manifest.extracted_text),
            }
        )
    rows.sort(key=lambda r: r["createdAt"], reverse=True)
    return rows


def read_manifest(store: ManifestStore, manifest_url: str) -> dict[str, Any]:
    return store.load(require_text(manifest_url, "manifestUrl")).to_dict()


def delete_project(blobs: BlobStore, project_id: str) -> int:
    """Delete every object under the project's prefix. Returns how many."""
    project_id = require_text(project_id, "projectId")
    if "/" in project_id:
        raise ValidationError("projectId must not contain '/'")
    urls = [o.url for o in blobs.list_all(project_prefix(project_id))]
    if urls:
        blobs.delete(urls)
    logger.info("Deleted project %s (%d objects)", project_id, len(urls))
    return len(urls)


def upload_source(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    pdf_bytes: bytes,
    filename: str,
) -> SourceResult:
    """Store the source PDF and point the manifest at it.

    An unreadable or absent manifest is recreated empty.
    """
    project_id = require_text(project_id, "projectId")
    if not pdf_bytes:
        raise ValidationError("empty PDF")
    source = blobs.put(source_pdf_path(project_id), pdf_bytes, "application/pdf")

    manifest = store.load_if_exists(manifest_url)
    if manifest is None or manifest.project_id != project_id:
        manifest = store.new_manifest(project_id)
    manifest.source_pdf = {"url": source.url, "filename": filename or "source.pdf"}
    manifest.status = "uploaded"
    store.append_debug(manifest, f"source uploaded: {manifest.source_pdf['filename']}")
    return SourceResult(manifest_url=store.save(manifest), source_pdf_url=source.url)


def record_source(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    source_pdf_url: str,
    filename: str,
) -> SourceResult:
    """Point the manifest at a PDF already uploaded by the client."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    source_pdf_url = require_text(source_pdf_url, "sourcePdfUrl")
    filename = require_text(filename, "filename")

    latest = load_checked(store, project_id, manifest_url)
    latest.source_pdf = {"url": source_pdf_url, "filename": filename}
    latest.status = "uploaded"
    store.append_debug(latest, f"source recorded: {filename}")
    return SourceResult(manifest_url=store.save(latest), source_pdf_url=source_pdf_url)


def process_document(
    store: ManifestStore,
    blobs: BlobStore,
    processor: DocumentProcessor,
    project_id: str,
    manifest_url: str,
) -> ProcessOutcome:
    """Run document AI over the source PDF and store text plus raw JSON."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.source_pdf:
        raise ValidationError("no source PDF uploaded")

    pdf = blobs.get(manifest.source_pdf["url"]).data
    result = processor.process(pdf)
    text_obj = blobs.put(
        extracted_text_path(project_id),
        result.full_text.encode("utf-8"),
        "text/plain; charset=utf-8",
    )
    docai_obj = blobs.put(
        docai_json_path(project_id),
        json.dumps(result.raw, indent=2, ensure_ascii=False).encode("utf-8"),
        "application/json",
    )

    latest = load_latest(store, project_id, manifest_url)
    latest.extracted_text = {"url": text_obj.url}
    latest.doc_ai_json = {"url": docai_obj.url}
    latest.status = "processed"
    store.append_debug(latest, f"processed: {len(result.full_text)} chars of text")
    return ProcessOutcome(
        manifest_url=store.save(latest),
        extracted_text_url=text_obj.url,
        doc_ai_json_url=docai_obj.url,
        text_length=len(result.full_text),
    )


def _check_json(name: str, value: str) -> None:
    try:
        json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{name} is not valid JSON ({e.msg} at line {e.lineno})") from e


def save_settings(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    **fields: Any,
) -> ProjectResult:
    """Update project settings on the latest manifest.

    Only string fields named in ``JSON_SETTINGS``/``TEXT_SETTINGS`` and a
    ``history`` object are accepted; ``None`` means "leave unchanged".
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    updates: dict[str, Any] = {}
    for name, value in fields.items():
        if value is None:
            continue
        if name == "history":
            if not isinstance(value, dict):
                raise ValidationError("history must be an object")
        elif name in JSON_SETTINGS or name in TEXT_SETTINGS:
            if not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")
            if name == "taggingJson" or (name in JSON_SETTINGS and value.strip()):
                _check_json(name, value)
        else:
            raise ValidationError(f"unknown setting '{name}'")
        updates[name] = value

    latest = load_latest(store, project_id, manifest_url)
    latest.settings.update(updates)
    store.append_debug(latest, f"settings saved: {', '.join(sorted(updates)) or 'no changes'}")
    return ProjectResult(manifest_url=store.save(latest), project_id=project_id)


def save_schema_results(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    results: str,
) -> SchemaResultsOutcome:
    """Store filled-in schema results (any text, usually JSON) and link them."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    if not isinstance(results, str) or not results:
        raise ValidationError("missing results")
    load_checked(store, project_id, manifest_url)
    obj = blobs.put(schema_results_path(project_id), results.encode("utf-8"), "application/json")

    latest = load_latest(store, project_id, manifest_url)
    latest.schema_results = {"url": obj.url}
    store.append_debug(latest, "schema results saved")
    return SchemaResultsOutcome(manifest_url=store.save(latest), schema_results_url=obj.url)
