"""Tests for folio.replies: tool reply JSON."""

import json
from dataclasses import dataclass

from folio.detect import PageBoxes
from folio.lifecycle import PruneResult
from folio.models import BBox
from folio.replies import NEXT_ADDRESS_HINT, camel, error, ok


@dataclass
class _Nested:
    page_number: int
    inner_items: list


class TestCamel:
    def test_camel(self):
        assert camel("manifest_url") == "manifestUrl"
        assert camel("total_assets_after") == "totalAssetsAfter"
        assert camel("ok") == "ok"


class TestOk:
    def test_dataclass_flattened_with_next_hint(self):
        data = json.loads(ok(PruneResult(manifest_url="u", checked=3, removed=1, unknown=2)))
        assert data["ok"] is True
        assert data["manifestUrl"] == "u"
        assert (data["checked"], data["removed"], data["unknown"]) == (3, 1, 2)
        assert data["hints"]["next"] == NEXT_ADDRESS_HINT

    def test_extra_fields_camelized(self):
        data = json.loads(ok(project_count=2, rows=[{"projectId": "p"}]))
        assert data["projectCount"] == 2
        assert data["rows"] == [{"projectId": "p"}]
        assert "hints" not in data

    def test_to_dict_respected(self):
        data = json.loads(ok(pages=[PageBoxes(1, [BBox(1, 2, 3, 4)])]))
        assert data["pages"] == [{"pageNumber": 1, "boxes": [{"x": 1, "y": 2, "w": 3, "h": 4}]}]

    def test_nested_dataclass(self):
        data = json.loads(ok(item=_Nested(2, [_Nested(3, [])])))
        assert data["item"] == {"pageNumber": 2, "innerItems": [{"pageNumber": 3, "innerItems": []}]}

    def test_custom_hints_kept(self):
        data = json.loads(ok({"manifestUrl": "u"}, hints={"tip": "x"}))
        assert data["hints"] == {"tip": "x", "next": NEXT_ADDRESS_HINT}

    def test_unicode_not_escaped(self):
        assert "café" in ok(name="café")


class TestError:
    def test_error(self):
        data = json.loads(error("boom"))
        assert data == {"ok": False, "error": "boom"}

    def test_error_hints(self):
        assert json.loads(error("boom", {"retry": "later"}))["hints"] == {"retry": "later"}
