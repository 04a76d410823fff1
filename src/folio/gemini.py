"""Gemini ``generateContent`` over REST.

Shared by page detection, text formatting, schema filling and the
settings helper. Requests go through :func:`folio.http.post_with_retry`,
so 429 and 5xx replies are retried with backoff before they surface as
:class:`UpstreamFetchError`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from folio.errors import UpstreamFetchError
from folio.http import error_text, post_with_retry

logger = logging.getLogger("folio")

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_MODEL = "gemini-2.0-flash"

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def user_text(text: str) -> dict[str, Any]:
    return {"role": "user", "parts": [{"text": text}]}


def parse_json_reply(text: str) -> Any:
    """Best-effort JSON from a model reply: fenced block, outermost bracketed span, whole text."""
    text = text.strip()
    if not text:
        return None
    candidates = []
    m = _FENCED_RE.search(text)
    if m:
        candidates.append(m.group(1))
    spans = []
    for open_, close in (("[", "]"), ("{", "}")):
        start, end = text.find(open_), text.rfind(close)
        if 0 <= start < end:
            spans.append((start, text[start : end + 1]))
    candidates.extend(span for _, span in sorted(spans))
    candidates.append(text)
    for c in candidates:
        try:
            return json.loads(c)
        except json.JSONDecodeError:
            continue
    return None


def reply_text(data: Any) -> str:
    """Concatenate the text parts of every candidate."""
    if not isinstance(data, dict):
        return ""
    text = ""
    for cand in data.get("candidates") or []:
        parts = ((cand or {}).get("content") or {}).get("parts") or []
        text += "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    return text


class GeminiClient:
    """API-key client for one Gemini model."""

    service = "Gemini"

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, *, timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def generate(
        self,
        contents: list[dict[str, Any]],
        *,
        system: str = "",
        generation_config: dict[str, Any] | None = None,
    ) -> str:
        """Send ``contents`` and return the reply text.

        Raises:
            UpstreamFetchError: unreachable, non-2xx, or a reply that is not JSON.
        """
        payload: dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if generation_config:
            payload["generationConfig"] = generation_config
        try:
            resp = post_with_retry(
                GEMINI_URL.format(model=self.model),
                json=payload,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success:
            raise UpstreamFetchError(self.service, resp.status_code, error_text(resp))
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamFetchError(self.service, resp.status_code, f"reply is not valid JSON: {e}") from e
        text = reply_text(data)
        logger.debug("Gemini %s replied with %d chars", self.model, len(text))
        return text

    def ask(self, prompt: str, **kwargs: Any) -> str:
        """Single-turn convenience wrapper around :meth:`generate`."""
        return self.generate([user_text(prompt)], **kwargs)
