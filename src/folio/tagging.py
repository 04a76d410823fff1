"""Image tagging through the OpenAI Responses API.

The tagger sees one cropped asset plus the text of the page it came from,
together with the project's ``aiRules`` and ``taggingJson`` settings, and
must answer with ``{"tags": [...], "rationale": "..."}`` under a strict
JSON schema. Tags are normalised here so every caller stores the same
shape.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from folio.errors import UpstreamFetchError
from folio.http import error_text, post_with_retry

logger = logging.getLogger("folio")

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
DEFAULT_MAX_TAGS = 25

SYSTEM_PROMPT = "You are an internal tagging engine.\nReturn ONLY valid JSON. No markdown. No extra keys."

TAG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "tags": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "rationale": {"type": "string"},
    },
    "required": ["tags", "rationale"],
}


@dataclass
class TagResult:
    tags: list[str]
    rationale: str = ""


@dataclass
class TaggingRules:
    """What the tagger is told about the project."""

    ai_rules: str = ""
    tagging_json: str = "{}"
    max_tags: int = DEFAULT_MAX_TAGS

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> TaggingRules:
        """Read rules out of manifest settings. A malformed taggingJson keeps the default cap."""
        tagging_json = settings.get("taggingJson")
        if not isinstance(tagging_json, str) or not tagging_json.strip():
            tagging_json = "{}"
        max_tags = DEFAULT_MAX_TAGS
        try:
            parsed = json.loads(tagging_json)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            cap = parsed.get("max_tags_per_image")
            if isinstance(cap, int) and not isinstance(cap, bool) and cap > 0:
                max_tags = cap
        ai_rules = settings.get("aiRules")
        return cls(
            ai_rules=ai_rules if isinstance(ai_rules, str) else "",
            tagging_json=tagging_json,
            max_tags=max_tags,
        )


class Tagger(Protocol):
    def tag(self, image_bytes: bytes, context_text: str, rules: TaggingRules) -> TagResult: ...


def normalize_tags(tags: list[Any], limit: int = DEFAULT_MAX_TAGS) -> list[str]:
    """Trim, lower-case, drop empties and duplicates (first wins), cap at ``limit``."""
    out: list[str] = []
    seen: set[str] = set()
    for t in tags:
        tag = str(t).strip().lower()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
        if len(out) >= limit:
            break
    return out


def _output_text(data: dict[str, Any]) -> str:
    """Pull the model's text out of a Responses API payload."""
    text = data.get("output_text")
    if isinstance(text, str) and text:
        return text
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text":
                value = part.get("text")
                if isinstance(value, str) and value:
                    return value
    return ""


class OpenAITagger:
    """Tagger backed by an OpenAI vision model."""

    service = "OpenAI"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        *,
        url: str = OPENAI_RESPONSES_URL,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout = timeout

    def _payload(self, image_bytes: bytes, context_text: str, rules: TaggingRules) -> dict[str, Any]:
        user = {
            "aiRules": rules.ai_rules,
            "taggingJson": rules.tagging_json,
            "context": {"pageText": context_text},
            "task": (
                "Generate concise, consistent tags for this image asset based on the "
                "pageText and the taggingJson. Keep tags stable and reusable."
            ),
        }
        image_url = "data:image/png;base64," + base64.b64encode(image_bytes).decode("ascii")
        return {
            "model": self.model,
            "input": [
                {"role": "system", "content": [{"type": "input_text", "text": SYSTEM_PROMPT}]},
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": json.dumps(user, ensure_ascii=False)},
                        {"type": "input_image", "image_url": image_url},
                    ],
                },
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "asset_tags",
                    "schema": TAG_SCHEMA,
                    "strict": True,
                }
            },
        }

    def tag(self, image_bytes: bytes, context_text: str, rules: TaggingRules) -> TagResult:
        try:
            resp = post_with_retry(
                self.url,
                json=self._payload(image_bytes, context_text, rules),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success:
            raise UpstreamFetchError(self.service, resp.status_code, error_text(resp))

        text = _output_text(resp.json())
        if not text:
            raise UpstreamFetchError(self.service, resp.status_code, "Model returned no output text.")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamFetchError(self.service, resp.status_code, "Model returned non-JSON output.") from e
        if (
            not isinstance(parsed, dict)
            or not isinstance(parsed.get("tags"), list)
            or not parsed["tags"]
            or not isinstance(parsed.get("rationale"), str)
        ):
            raise UpstreamFetchError(self.service, resp.status_code, "Model output has the wrong shape.")

        tags = normalize_tags(parsed["tags"], rules.max_tags)
        logger.debug("Tagged asset with %d tags", len(tags))
        return TagResult(tags=tags, rationale=parsed["rationale"].strip())
