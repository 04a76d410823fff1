"""Folio MCP server: PDF asset pipeline over a single JSON manifest.

Run with: python -m folio.server (or the ``folio-mcp`` script).
The server uses stdio transport for MCP client communication.

Every mutating tool takes the caller's current ``manifest_url`` and
returns the new one in its reply; callers must switch to it.
"""

from __future__ import annotations

import functools
import json
import logging
import logging.handlers
import os
import re
import sys
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from folio import detect, lifecycle, pages, projects, writing
from folio import replies
from folio.blobstore import BlobStore
from folio.config import (
    FolioConfig,
    build_blob_store,
    build_manifest_store,
    load_config,
    secret,
)
from folio.docai import DocAiProcessor
from folio.gemini import GeminiClient
from folio.errors import ConfigError, FolioError, ValidationError
from folio.manifest import ManifestStore
from folio.tagging import OpenAITagger

mcp_server = FastMCP("Folio")

# ---------------------------------------------------------------------------
# Logging - stderr always, file handler added once a log directory is known
# ---------------------------------------------------------------------------

logger = logging.getLogger("folio")
logger.setLevel(logging.DEBUG)

_stderr_handler = logging.StreamHandler(sys.stderr)
_stderr_handler.setLevel(logging.WARNING)
_stderr_handler.setFormatter(
    logging.Formatter(
        "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
    )
)
logger.addHandler(_stderr_handler)

_file_handler: logging.Handler | None = None


def _attach_file_log(log_dir: Path) -> None:
    """Attach a rotating file handler to ``log_dir/server.log`` (idempotent)."""
    global _file_handler
    if _file_handler is not None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "server.log"
    fh = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(
        logging.Formatter("%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(fh)
    _file_handler = fh
    logger.info("Folio server started, log attached to %s", log_path)


# ---------------------------------------------------------------------------
# Tool invocation wrapper - timing, error replies, timeout and cancellation.
#
# Each call runs in a worker thread via anyio.to_thread. On timeout the
# call's cancellation token is set; tagging and detection check it between
# items and stop without saving.
# ---------------------------------------------------------------------------

_original_tool = mcp_server.tool

# Tagging a large document calls the model once per asset.
_TOOL_TIMEOUT = 900


def _sanitize_exc(exc: Exception) -> str:
    """Strip filesystem paths from exception messages."""
    msg = str(exc)
    msg = re.sub(r"/(?:Users|home|tmp|var|opt|etc|root)/\S+", "<path>", msg)
    msg = re.sub(r"[A-Z]:\\[\w\\]+", "<path>", msg)
    return msg.strip()


def _logging_tool(**kwargs):
    """Replacement for ``mcp_server.tool()`` that logs and turns errors into replies."""
    import anyio

    from folio.cancellation import Cancelled, cancellation_scope

    decorator = _original_tool(**kwargs)

    def wrapper(fn):
        @functools.wraps(fn)
        async def logged(*args, **kw):
            name = fn.__name__
            logger.info("TOOL %s called", name)
            t0 = time.monotonic()
            with cancellation_scope() as token:

                def _run_in_thread():
                    with cancellation_scope(token):
                        return fn(*args, **kw)

                try:
                    with anyio.fail_after(_TOOL_TIMEOUT):
                        result = await anyio.to_thread.run_sync(_run_in_thread)
                except TimeoutError:
                    token.set()
                    dt = time.monotonic() - t0
                    logger.error("TOOL %s timed out after %.0fs, cancellation requested", name, dt)
                    return replies.error(
                        f"Tool {name} timed out after {int(dt)}s and was cancelled. "
                        f"The manifest was not modified by the cancelled part."
                    )
                except Cancelled as exc:
                    logger.info("TOOL %s cancelled after %.2fs", name, time.monotonic() - t0)
                    return replies.error(str(exc))
                except FolioError as exc:
                    logger.warning(
                        "TOOL %s failed (%s) after %.2fs: %s",
                        name,
                        type(exc).__name__,
                        time.monotonic() - t0,
                        exc,
                    )
                    return replies.error(str(exc))
                except Exception as exc:
                    logger.error(
                        "TOOL %s crashed after %.2fs:\n%s",
                        name,
                        time.monotonic() - t0,
                        traceback.format_exc(),
                    )
                    return replies.error(
                        f"Internal error in {name}: {type(exc).__name__}: {_sanitize_exc(exc)}"
                    )
            dt = time.monotonic() - t0
            logger.info("TOOL %s completed in %.2fs (%d bytes)", name, dt, len(result))
            return result

        return decorator(logged)

    return wrapper


mcp_server.tool = _logging_tool  # type: ignore[assignment]


# ---------------------------------------------------------------------------
# Services - built lazily from folio.yaml
# ---------------------------------------------------------------------------


@dataclass
class Services:
    config: FolioConfig
    blobs: BlobStore
    store: ManifestStore


_services: Services | None = None


def _svc() -> Services:
    global _services
    if _services is None:
        cfg = load_config()
        blobs = build_blob_store(cfg)
        _services = Services(config=cfg, blobs=blobs, store=build_manifest_store(cfg, blobs))
    return _services


def _processor() -> DocAiProcessor:
    cfg = _svc().config.docai
    if not cfg.endpoint:
        raise ConfigError("docai.endpoint is not set", hint="Add the processor's :process URL to folio.yaml.")
    return DocAiProcessor(cfg.endpoint, secret(cfg.token_env, "Document AI"))


def _detector() -> detect.GeminiDetector:
    cfg = _svc().config.gemini
    return detect.GeminiDetector(secret(cfg.api_key_env, "Gemini"), cfg.model)


def _writer() -> GeminiClient:
    cfg = _svc().config.gemini
    return GeminiClient(secret(cfg.api_key_env, "Gemini"), cfg.model)


def _tagger() -> OpenAITagger:
    cfg = _svc().config.openai
    return OpenAITagger(secret(cfg.api_key_env, "OpenAI"), cfg.model)


def _json_arg(value: str, name: str) -> Any:
    """Decode a JSON-string tool argument."""
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{name} is not valid JSON ({e.msg})") from e


def _read_file(path: str, name: str) -> bytes:
    p = Path(path).expanduser()
    if not p.is_file():
        raise ValidationError(f"{name} '{path}' is not a readable file")
    return p.read_bytes()


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@mcp_server.tool()
def create_project() -> str:
    """Create an empty project. Returns its projectId and first manifestUrl."""
    return replies.ok(projects.create_project(_svc().store))


@mcp_server.tool()
def list_projects() -> str:
    """List every project in storage, newest first."""
    s = _svc()
    return replies.ok(projects=projects.list_projects(s.store, s.blobs))


@mcp_server.tool()
def read_manifest(manifest_url: str) -> str:
    """Return the full manifest JSON at manifest_url."""
    return replies.ok(manifest=projects.read_manifest(_svc().store, manifest_url))


@mcp_server.tool()
def delete_project(project_id: str) -> str:
    """Delete the project and every blob under its prefix. Cannot be undone."""
    count = projects.delete_project(_svc().blobs, project_id)
    return replies.ok(deleted_prefix=f"projects/{project_id}/", deleted_count=count)


@mcp_server.tool()
def upload_source(project_id: str, pdf_path: str, manifest_url: str = "", filename: str = "") -> str:
    """Upload a local PDF as the project's source. Recreates the manifest if missing."""
    s = _svc()
    data = _read_file(pdf_path, "pdf_path")
    result = projects.upload_source(
        s.store, s.blobs, project_id, manifest_url, data, filename or Path(pdf_path).name
    )
    return replies.ok(result)


@mcp_server.tool()
def record_source(project_id: str, manifest_url: str, source_pdf_url: str, filename: str) -> str:
    """Point the manifest at a PDF that is already in blob storage."""
    return replies.ok(
        projects.record_source(_svc().store, project_id, manifest_url, source_pdf_url, filename)
    )


@mcp_server.tool()
def process_document(project_id: str, manifest_url: str) -> str:
    """Run Document AI over the source PDF; stores text.txt and docai.json."""
    s = _svc()
    return replies.ok(
        projects.process_document(s.store, s.blobs, _processor(), project_id, manifest_url)
    )


@mcp_server.tool()
def save_settings(
    project_id: str,
    manifest_url: str,
    ai_rules: str | None = None,
    ui_fields_json: str | None = None,
    tagging_json: str | None = None,
    schema_json: str | None = None,
    completeness_rules: str | None = None,
    detection_rules_json: str | None = None,
    history_json: str | None = None,
) -> str:
    """Update project settings. Omitted fields stay unchanged; JSON fields must parse."""
    history = _json_arg(history_json, "history_json") if history_json else None
    result = projects.save_settings(
        _svc().store,
        project_id,
        manifest_url,
        aiRules=ai_rules,
        uiFieldsJson=ui_fields_json,
        taggingJson=tagging_json,
        schemaJson=schema_json,
        completenessRules=completeness_rules,
        detectionRulesJson=detection_rules_json,
        history=history,
    )
    return replies.ok(result)


@mcp_server.tool()
def save_schema_results(project_id: str, manifest_url: str, results: str) -> str:
    """Store filled-in schema results and link them from the manifest."""
    s = _svc()
    return replies.ok(
        projects.save_schema_results(s.store, s.blobs, project_id, manifest_url, results)
    )


# ---------------------------------------------------------------------------
# Text generation
# ---------------------------------------------------------------------------


@mcp_server.tool()
def format_text(project_id: str, manifest_url: str) -> str:
    """Reflow the OCR text into readable paragraphs and store it as formattedText."""
    s = _svc()
    return replies.ok(writing.format_text(s.store, s.blobs, _writer(), project_id, manifest_url))


@mcp_server.tool()
def fill_schema(project_id: str, manifest_url: str) -> str:
    """Fill settings.schemaJson from the project text and tagged assets; stores schemaResults."""
    s = _svc()
    return replies.ok(writing.fill_schema(s.store, s.blobs, _writer(), project_id, manifest_url))


@mcp_server.tool()
def settings_help(messages_json: str, settings_tab: str = "", current_content: str = "") -> str:
    """Chat about project settings. messages_json: [{"role": "user"|"assistant", "content"}, ...]."""
    messages = _json_arg(messages_json, "messages_json")
    return replies.ok(writing.settings_help(_writer(), messages, settings_tab, current_content))


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@mcp_server.tool()
def rasterize_pages(project_id: str, manifest_url: str, limit: int = 0, zoom: float = 0) -> str:
    """Render the source PDF to page PNGs, upload them and record every page."""
    s = _svc()
    result = pages.rasterize_pages(
        s.store,
        s.blobs,
        project_id,
        manifest_url,
        zoom=zoom or s.config.raster.zoom,
        limit=limit,
    )
    return replies.ok(result)


@mcp_server.tool()
def record_page(
    project_id: str, manifest_url: str, page_number: int, url: str, width: float, height: float
) -> str:
    """Record (or update) one page raster. Keeps the page's assets and deletions."""
    return replies.ok(
        pages.record_page(_svc().store, project_id, manifest_url, page_number, url, width, height)
    )


@mcp_server.tool()
def record_pages_bulk(project_id: str, manifest_url: str, pages_json: str) -> str:
    """Record many pages at once. pages_json: [{"pageNumber", "url", "width", "height"}, ...]."""
    rows = _json_arg(pages_json, "pages_json")
    return replies.ok(pages.record_pages_bulk(_svc().store, project_id, manifest_url, rows))


@mcp_server.tool()
def upload_page(
    project_id: str, manifest_url: str, page_number: int, png_path: str, width: float, height: float
) -> str:
    """Upload a local page PNG to its fixed path and record it."""
    s = _svc()
    data = _read_file(png_path, "png_path")
    return replies.ok(
        pages.upload_page(s.store, s.blobs, project_id, manifest_url, page_number, data, width, height)
    )


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


@mcp_server.tool()
def record_asset(
    project_id: str, manifest_url: str, page_number: int, asset_id: str, url: str, bbox_json: str
) -> str:
    """Record one asset crop. A deleted asset id is accepted and ignored."""
    bbox = _json_arg(bbox_json, "bbox_json")
    return replies.ok(
        lifecycle.record_asset(_svc().store, project_id, manifest_url, page_number, asset_id, url, bbox)
    )


@mcp_server.tool()
def record_assets_bulk(project_id: str, manifest_url: str, page_number: int, assets_json: str) -> str:
    """Record many assets on one page. assets_json: [{"assetId", "url", "bbox"}, ...]."""
    assets = _json_arg(assets_json, "assets_json")
    return replies.ok(
        lifecycle.record_assets_bulk(_svc().store, project_id, manifest_url, page_number, assets)
    )


@mcp_server.tool()
def delete_asset(
    project_id: str, manifest_url: str, page_number: int, asset_id: str, asset_url: str = ""
) -> str:
    """Delete an asset's blobs and mark its id deleted so it never comes back."""
    s = _svc()
    return replies.ok(
        lifecycle.delete_asset(
            s.store, s.blobs, project_id, manifest_url, page_number, asset_id, asset_url or None
        )
    )


@mcp_server.tool()
def prune_missing_assets(project_id: str, manifest_url: str) -> str:
    """Drop asset records whose blob is definitely gone (404/410 only)."""
    s = _svc()
    return replies.ok(
        lifecycle.prune_missing_assets(
            s.store, s.blobs, project_id, manifest_url, probe_workers=s.config.prune.probe_workers
        )
    )


@mcp_server.tool()
def rebuild_index(project_id: str, manifest_url: str) -> str:
    """Rebuild every page's asset list from what storage actually holds."""
    s = _svc()
    return replies.ok(
        lifecycle.rebuild_index(
            s.store, s.blobs, project_id, manifest_url, probe_workers=s.config.prune.probe_workers
        )
    )


@mcp_server.tool()
def restore_from_storage(project_id: str, manifest_url: str) -> str:
    """Re-add pages and assets found in storage but missing from the manifest."""
    s = _svc()
    return replies.ok(lifecycle.restore_from_storage(s.store, s.blobs, project_id, manifest_url))


@mcp_server.tool()
def detect_assets(project_id: str, manifest_url: str, source: str = "detector", limit_pages: int = 0) -> str:
    """Propose asset boxes per page without saving. source: 'detector' (Gemini) or 'docai'."""
    s = _svc()
    detector = _detector() if source == "detector" else None
    found = detect.detect_assets(
        s.store, s.blobs, detector, project_id, manifest_url, limit_pages=limit_pages, source=source
    )
    return replies.ok(pages=found)


@mcp_server.tool()
def extract_assets(project_id: str, manifest_url: str, source: str = "detector", limit_pages: int = 0) -> str:
    """Detect, crop, upload and record assets for each page."""
    s = _svc()
    detector = _detector() if source == "detector" else None
    result = detect.extract_assets(
        s.store,
        s.blobs,
        detector,
        project_id,
        manifest_url,
        limit_pages=limit_pages,
        source=source,
        zoom=s.config.raster.zoom,
    )
    return replies.ok(result)


@mcp_server.tool()
def tag_assets(project_id: str, manifest_url: str, overwrite: bool = False, limit_assets: int = 0) -> str:
    """Tag untagged assets with the vision model. Nothing is saved if the run fails."""
    s = _svc()
    return replies.ok(
        lifecycle.tag_assets(
            s.store,
            s.blobs,
            _tagger(),
            project_id,
            manifest_url,
            overwrite=overwrite,
            limit_assets=limit_assets,
        )
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Folio MCP server."""
    log_dir = os.environ.get("FOLIO_LOG_DIR")
    if log_dir:
        _attach_file_log(Path(log_dir))
    try:
        mcp_server.run()
    except KeyboardInterrupt:
        logger.info("Folio server stopped (keyboard interrupt)")
    except Exception:
        logger.critical("Folio server crashed:\n%s", traceback.format_exc())
        raise


if __name__ == "__main__":
    main()
