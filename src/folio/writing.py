"""Text generation over a project: OCR clean-up, schema filling, settings help.

:func:`format_text` reflows the extracted OCR text and stores it as the
project's formatted text. :func:`fill_schema` asks the model to fill the
project's ``schemaJson`` from that text plus the tagged assets, and stores
the answer as schema results. :func:`settings_help` is a stateless chat
about the project settings; it reads and writes nothing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from folio.blobstore import BlobStore
from folio.errors import UpstreamFetchError, ValidationError
from folio.gemini import parse_json_reply, user_text
from folio.ledger import iter_assets
from folio.lifecycle import load_checked, load_latest, require_text
from folio.manifest import ManifestStore
from folio.models import Manifest
from folio.naming import formatted_text_path
from folio.projects import save_schema_results

logger = logging.getLogger("folio")

FORMAT_PROMPT = """\
The text below was extracted from a scanned PDF by OCR. Line breaks may fall
mid-sentence, paragraph breaks may be missing, and headings may run into body
text. Reformat it for reading:
1. Join lines that belong to one sentence or paragraph.
2. Put a blank line between paragraphs and sections.
3. Keep headings and titles on their own lines.
4. Fix obvious OCR artifacts.
5. Do not change the wording or the content.
Reply with the reformatted text only.

---
{text}
---"""

SCHEMA_PROMPT = """\
Fill in the schema below from the source material.

## Rules
{rules}

## Schema
{schema}

## Source material
{text}

## Tagged assets
{assets}

## Tags in use
{tags}

Instructions:
- Use only facts found in the source material. Use "Unknown" for missing
  strings and [] for missing lists.
- For image fields, pick the tagged asset whose tags best match the entity
  (name first, then role or setting, then style). Reply with
  {{"url": <asset url>, "caption": <short description>, "_matchConfidence": <0-1>,
  "_matchReason": <why>}}, or null when nothing matches with confidence 0.3 or more.
- Only use asset URLs listed above.
- Match the schema's field names exactly.
Reply with JSON only."""

SETTINGS_HELP_PROMPT = """\
You help users configure a PDF asset pipeline. It rasterizes PDF pages,
detects and crops images, tags them with a vision model, and fills a
structured schema from the document text. The settings are:

- aiRules (plain text): instructions every model call follows.
- taggingJson: how assets are tagged, e.g. {"categories": [...], "max_tags_per_image": 10}.
- schemaJson: the structure that schema filling produces.
- completenessRules: weights used to score how complete the filled schema is.
- detectionRulesJson: what detection should look for or ignore, e.g.
  {"targets": ["characters", "logos"], "ignore": ["page numbers"], "minimumSize": {"width": 80, "height": 80}}.

Give valid JSON when asked for configuration, explain the fields you use,
and suggest concrete improvements to the user's current content."""

ROLES = {"user": "user", "assistant": "model"}


class TextModel(Protocol):
    def generate(
        self,
        contents: list[dict[str, Any]],
        *,
        system: str = "",
        generation_config: dict[str, Any] | None = None,
    ) -> str: ...


@dataclass
class FormatResult:
    manifest_url: str
    formatted_text_url: str
    text_length: int = 0


@dataclass
class SchemaFillResult:
    manifest_url: str
    schema_results_url: str
    results: str
    valid_json: bool = False


@dataclass
class HelpReply:
    response: str


def _fetch_text(blobs: BlobStore, pointer: dict[str, str] | None, what: str) -> str:
    """Text behind a manifest pointer, or "" when there is none or it is unreadable."""
    url = (pointer or {}).get("url")
    if not url:
        return ""
    try:
        return blobs.get(url).data.decode("utf-8", errors="replace")
    except UpstreamFetchError as e:
        logger.warning("Could not read %s at %s: %s", what, url, e)
        return ""


def format_text(
    store: ManifestStore,
    blobs: BlobStore,
    model: TextModel,
    project_id: str,
    manifest_url: str,
) -> FormatResult:
    """Reflow the extracted text and store it as ``formattedText``."""
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.extracted_text:
        raise ValidationError("no extracted text; run process_document first")
    text = blobs.get(manifest.extracted_text["url"]).data.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValidationError("extracted text is empty")

    formatted = model.generate([user_text(FORMAT_PROMPT.format(text=text))]).strip()
    if not formatted:
        raise UpstreamFetchError("Gemini", 200, "The model returned no text.")
    obj = blobs.put(formatted_text_path(project_id), formatted.encode("utf-8"), "text/plain; charset=utf-8")

    latest = load_latest(store, project_id, manifest_url)
    latest.formatted_text = {"url": obj.url}
    store.append_debug(latest, f"formatted text: {len(formatted)} chars")
    return FormatResult(
        manifest_url=store.save(latest), formatted_text_url=obj.url, text_length=len(formatted)
    )


def tagged_assets(manifest: Manifest) -> list[dict[str, Any]]:
    """Live assets that have a url and at least one tag, pages ascending."""
    return [
        {"url": asset.url, "assetId": asset.asset_id, "page": page.page_number, "tags": list(asset.tags)}
        for page, asset in iter_assets(manifest)
        if asset.url and asset.tags
    ]


def build_schema_prompt(rules: str, schema: Any, text: str, assets: list[dict[str, Any]]) -> str:
    tags = sorted({t for a in assets for t in a["tags"]})
    return SCHEMA_PROMPT.format(
        rules=rules.strip() or "(none)",
        schema=json.dumps(schema, indent=2, ensure_ascii=False),
        text=text,
        assets=json.dumps(assets, indent=2, ensure_ascii=False) if assets else "No tagged assets available.",
        tags=", ".join(tags) if tags else "None",
    )


def fill_schema(
    store: ManifestStore,
    blobs: BlobStore,
    model: TextModel,
    project_id: str,
    manifest_url: str,
) -> SchemaFillResult:
    """Fill ``schemaJson`` from the project text and tagged assets, then store the results.

    Formatted text is preferred over extracted text. A reply that is not
    JSON is stored as-is so it can be edited and saved again.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    manifest = load_checked(store, project_id, manifest_url)
    try:
        schema = json.loads(manifest.settings.get("schemaJson") or "{}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"schemaJson in settings is not valid JSON ({e.msg})") from e

    text = _fetch_text(blobs, manifest.formatted_text, "formatted text") or _fetch_text(
        blobs, manifest.extracted_text, "extracted text"
    )
    if not text.strip():
        raise ValidationError("no extracted or formatted text; run process_document first")

    prompt = build_schema_prompt(
        str(manifest.settings.get("aiRules") or ""), schema, text, tagged_assets(manifest)
    )
    reply = model.generate([user_text(prompt)]).strip()
    if not reply:
        raise UpstreamFetchError("Gemini", 200, "The model returned no text.")
    parsed = parse_json_reply(reply)
    valid = isinstance(parsed, (dict, list))
    results = json.dumps(parsed, indent=2, ensure_ascii=False) if valid else reply
    if not valid:
        logger.warning("Schema fill for %s returned non-JSON text; storing it unparsed", project_id)

    saved = save_schema_results(store, blobs, project_id, manifest_url, results)
    return SchemaFillResult(
        manifest_url=saved.manifest_url,
        schema_results_url=saved.schema_results_url,
        results=results,
        valid_json=valid,
    )


def settings_help(
    model: TextModel,
    messages: Any,
    settings_tab: str = "",
    current_content: str = "",
) -> HelpReply:
    """Answer the last user message of a settings conversation."""
    if not isinstance(messages, list) or not messages:
        raise ValidationError("messages must be a non-empty list")
    contents = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict) or msg.get("role") not in ROLES:
            raise ValidationError(f"messages[{i}].role must be 'user' or 'assistant'")
        content = msg.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(f"messages[{i}].content is required")
        contents.append({"role": ROLES[msg["role"]], "parts": [{"text": content}]})
    if contents[-1]["role"] != "user":
        raise ValidationError("the last message must come from the user")

    system = SETTINGS_HELP_PROMPT
    if settings_tab:
        system += f'\n\nThe user is editing the "{settings_tab}" setting.'
    if current_content:
        system += f"\n\nIts current content is:\n```\n{current_content}\n```"
    reply = model.generate(contents, system=system).strip()
    return HelpReply(response=reply or "No response generated.")
