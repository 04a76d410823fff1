"""Tests for folio.tagging.

The OpenAI client is tested with httpx and time.sleep mocked out.
"""

import base64
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from folio.errors import UpstreamFetchError
from folio.models import default_settings
from folio.tagging import (
    DEFAULT_MAX_TAGS,
    OpenAITagger,
    TaggingRules,
    normalize_tags,
)


class TestNormalizeTags:
    def test_trim_lower_dedupe(self):
        assert normalize_tags([" Chart ", "chart", "", "AXIS", 3]) == ["chart", "axis", "3"]

    def test_cap(self):
        assert normalize_tags([f"t{i}" for i in range(10)], limit=3) == ["t0", "t1", "t2"]


class TestTaggingRules:
    def test_from_default_settings(self):
        rules = TaggingRules.from_settings(default_settings())
        assert rules.max_tags == 25
        assert "Otherly" in rules.ai_rules

    def test_custom_cap(self):
        rules = TaggingRules.from_settings({"taggingJson": '{"max_tags_per_image": 4}'})
        assert rules.max_tags == 4

    @pytest.mark.parametrize(
        "tagging_json",
        ["not json", '{"max_tags_per_image": 0}', '{"max_tags_per_image": true}', "", None],
    )
    def test_bad_cap_keeps_default(self, tagging_json):
        rules = TaggingRules.from_settings({"taggingJson": tagging_json})
        assert rules.max_tags == DEFAULT_MAX_TAGS


def _openai_resp(body, status: int = 200) -> MagicMock:
    resp = MagicMock(status_code=status, is_success=200 <= status < 300, text=json.dumps(body), headers={})
    resp.json.return_value = body
    return resp


def _answer(tags, rationale="because") -> dict:
    return {"output_text": json.dumps({"tags": tags, "rationale": rationale})}


class TestOpenAITagger:
    @patch("folio.http.time.sleep")
    @patch("folio.http.httpx.post")
    def test_tag(self, mock_post, _sleep):
        mock_post.return_value = _openai_resp(_answer(["Bar Chart", "bar chart", "Sales"], " growth "))
        rules = TaggingRules(ai_rules="strict", tagging_json="{}", max_tags=5)
        result = OpenAITagger("sk", "gpt-test").tag(b"png", "Page text", rules)
        assert result.tags == ["bar chart", "sales"]
        assert result.rationale == "growth"

        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Bearer sk"}
        payload = kwargs["json"]
        assert payload["model"] == "gpt-test"
        assert payload["text"]["format"]["type"] == "json_schema"
        assert payload["text"]["format"]["strict"] is True
        user = payload["input"][1]["content"]
        sent = json.loads(user[0]["text"])
        assert sent["aiRules"] == "strict"
        assert sent["context"]["pageText"] == "Page text"
        image_url = user[1]["image_url"]
        assert image_url.startswith("data:image/png;base64,")
        assert base64.b64decode(image_url.split(",", 1)[1]) == b"png"

    @patch("folio.http.time.sleep")
    @patch("folio.http.httpx.post")
    def test_reads_nested_output(self, mock_post, _sleep):
        body = {
            "output": [
                {"type": "reasoning", "content": []},
                {
                    "type": "message",
                    "content": [{"type": "output_text", "text": json.dumps({"tags": ["x"], "rationale": "r"})}],
                },
            ]
        }
        mock_post.return_value = _openai_resp(body)
        assert OpenAITagger("sk").tag(b"png", "", TaggingRules()).tags == ["x"]

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"output_text": "not json"},
            {"output_text": json.dumps({"tags": [], "rationale": "r"})},
            {"output_text": json.dumps({"tags": ["a"]})},
        ],
    )
    @patch("folio.http.time.sleep")
    @patch("folio.http.httpx.post")
    def test_bad_output(self, mock_post, _sleep, body):
        mock_post.return_value = _openai_resp(body)
        with pytest.raises(UpstreamFetchError):
            OpenAITagger("sk").tag(b"png", "", TaggingRules())

    @patch("folio.http.time.sleep")
    @patch("folio.http.httpx.post")
    def test_http_error(self, mock_post, _sleep):
        mock_post.return_value = _openai_resp({"error": "quota"}, status=402)
        with pytest.raises(UpstreamFetchError) as exc:
            OpenAITagger("sk").tag(b"png", "", TaggingRules())
        assert exc.value.status_code == 402

    @patch("folio.http.time.sleep")
    @patch("folio.http.httpx.post")
    def test_unreachable(self, mock_post, _sleep):
        mock_post.side_effect = httpx.ConnectTimeout("slow")
        with pytest.raises(UpstreamFetchError) as exc:
            OpenAITagger("sk").tag(b"png", "", TaggingRules())
        assert exc.value.status_code == 0
