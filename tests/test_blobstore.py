"""Tests for folio.blobstore.

The REST backend is tested with httpx mocked out; the local backend runs
against a temp directory.
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from folio.blobstore import (
    BlobObject,
    Existence,
    HttpBlobStore,
    ListPage,
    LocalBlobStore,
    classify_status,
    with_suffix,
)
from folio.errors import ConflictError, UpstreamFetchError

BASE = "https://blob.test/store"


class TestHelpers:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (200, Existence.EXISTS),
            (204, Existence.EXISTS),
            (404, Existence.MISSING),
            (410, Existence.MISSING),
            (403, Existence.UNKNOWN),
            (500, Existence.UNKNOWN),
            (503, Existence.UNKNOWN),
        ],
    )
    def test_classify_status(self, status, expected):
        assert classify_status(status) is expected

    def test_with_suffix(self):
        assert with_suffix("a/p1-img01.png", "XYZ") == "a/p1-img01-XYZ.png"
        assert with_suffix("a.b/noext", "XYZ") == "a.b/noext-XYZ"


class TestLocalBlobStore:
    def test_put_get(self, blobs: LocalBlobStore):
        obj = blobs.put("projects/a/x.txt", b"hello", "text/plain")
        assert obj.pathname == "projects/a/x.txt"
        assert obj.url.startswith(f"{BASE}/projects/a/x.txt?v=")
        assert blobs.get(obj.url).data == b"hello"

    def test_overwrite_changes_address(self, blobs: LocalBlobStore):
        a = blobs.put("projects/a/m.json", b"1", "application/json")
        b = blobs.put("projects/a/m.json", b"2", "application/json")
        assert a.url != b.url
        # Any address for the path reads the newest content.
        assert blobs.get(a.url).data == b"2"

    def test_random_suffix(self, blobs: LocalBlobStore):
        obj = blobs.put("projects/a/assets/p1/p1-img01.png", b"png", "image/png", add_random_suffix=True)
        assert obj.pathname.startswith("projects/a/assets/p1/p1-img01-")
        assert obj.pathname.endswith(".png")
        assert obj.pathname != "projects/a/assets/p1/p1-img01.png"

    def test_get_missing_raises_404(self, blobs: LocalBlobStore):
        with pytest.raises(UpstreamFetchError) as exc:
            blobs.get(f"{BASE}/projects/a/none.json")
        assert exc.value.status_code == 404

    def test_get_foreign_url_raises(self, blobs: LocalBlobStore):
        with pytest.raises(UpstreamFetchError):
            blobs.get("https://elsewhere.test/x")

    def test_unsafe_pathname_rejected(self, blobs: LocalBlobStore):
        with pytest.raises(UpstreamFetchError):
            blobs.put("projects/../../etc/passwd", b"x", "text/plain")

    def test_list_prefix_and_pagination(self, blobs: LocalBlobStore):
        for i in range(5):
            blobs.put(f"projects/a/f{i}.txt", b"x", "text/plain")
        blobs.put("projects/b/other.txt", b"x", "text/plain")
        first = blobs.list("projects/a/", limit=2)
        assert len(first.items) == 2
        assert first.cursor is not None
        everything = blobs.list_all("projects/a/", limit=2)
        assert [o.pathname for o in everything] == [f"projects/a/f{i}.txt" for i in range(5)]

    def test_list_skips_lock_files(self, blobs: LocalBlobStore):
        blobs.put("projects/a/x.txt", b"x", "text/plain")
        names = [o.pathname for o in blobs.list_all("projects/")]
        assert names == ["projects/a/x.txt"]

    def test_list_empty_store(self, blobs: LocalBlobStore):
        assert blobs.list("projects/") == ListPage(items=[], cursor=None)

    def test_delete_is_idempotent(self, blobs: LocalBlobStore):
        obj = blobs.put("projects/a/x.txt", b"x", "text/plain")
        blobs.delete([obj.url])
        blobs.delete([obj.url])
        assert blobs.probe(obj.url) is Existence.MISSING

    def test_probe(self, blobs: LocalBlobStore):
        obj = blobs.put("projects/a/x.txt", b"x", "text/plain")
        assert blobs.probe(obj.url) is Existence.EXISTS
        assert blobs.probe(f"{BASE}/projects/a/y.txt") is Existence.MISSING
        assert blobs.probe("https://elsewhere.test/x") is Existence.UNKNOWN

    def test_conditional_write(self, blobs: LocalBlobStore):
        obj = blobs.put("projects/a/m.json", b"v1", "application/json")
        tag = blobs.get(obj.url).etag
        blobs.put("projects/a/m.json", b"v2", "application/json", if_match=tag)
        with pytest.raises(ConflictError):
            blobs.put("projects/a/m.json", b"v3", "application/json", if_match=tag)
        assert blobs.get(obj.url).data == b"v2"


def _resp(status: int, json_body=None, content: bytes = b"", headers=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.is_success = 200 <= status < 300
    resp.json.return_value = json_body
    resp.content = content
    resp.text = content.decode() if content else ""
    resp.reason_phrase = ""
    resp.headers = headers or {}
    return resp


class TestHttpBlobStore:
    def _store(self) -> HttpBlobStore:
        return HttpBlobStore("https://api.blob.test/", "tok")

    @patch("folio.blobstore.httpx.put")
    def test_put(self, mock_put):
        mock_put.return_value = _resp(200, {"url": "https://cdn/x.png", "pathname": "projects/a/x.png"})
        obj = self._store().put("projects/a/x.png", b"png", "image/png", add_random_suffix=True)
        assert obj == BlobObject("https://cdn/x.png", "projects/a/x.png")
        args, kwargs = mock_put.call_args
        assert args[0] == "https://api.blob.test/projects/a/x.png"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["x-add-random-suffix"] == "1"
        assert "If-Match" not in kwargs["headers"]

    @patch("folio.blobstore.httpx.put")
    def test_put_conditional_conflict(self, mock_put):
        mock_put.return_value = _resp(412)
        with pytest.raises(ConflictError):
            self._store().put("projects/a/m.json", b"{}", "application/json", if_match="e1")
        assert mock_put.call_args.kwargs["headers"]["If-Match"] == "e1"

    @patch("folio.blobstore.httpx.put")
    def test_put_failure(self, mock_put):
        mock_put.return_value = _resp(500, content=b"boom")
        with pytest.raises(UpstreamFetchError, match="500"):
            self._store().put("projects/a/x", b"", "text/plain")

    @patch("folio.blobstore.httpx.put")
    def test_put_reply_not_json(self, mock_put):
        resp = _resp(200, content=b"<html>ok</html>")
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        mock_put.return_value = resp
        with pytest.raises(UpstreamFetchError, match="not valid JSON"):
            self._store().put("projects/a/x.png", b"png", "image/png")

    @patch("folio.blobstore.httpx.put")
    def test_put_reply_without_url(self, mock_put):
        mock_put.return_value = _resp(200, {"pathname": "projects/a/x.png"})
        with pytest.raises(UpstreamFetchError, match="no url"):
            self._store().put("projects/a/x.png", b"png", "image/png")

    @patch("folio.blobstore.httpx.get")
    def test_list_reply_not_object(self, mock_get):
        mock_get.return_value = _resp(200, ["not", "a", "dict"])
        with pytest.raises(UpstreamFetchError, match="not a JSON object"):
            self._store().list("projects/")

    @patch("folio.http.httpx.get")
    def test_get_bypasses_cache(self, mock_get):
        mock_get.return_value = _resp(200, content=b"data", headers={"etag": '"e1"'})
        content = self._store().get("https://cdn/projects/a/manifest.json?v=old")
        assert content.data == b"data"
        assert content.etag == '"e1"'
        url = mock_get.call_args.args[0]
        assert url.startswith("https://cdn/projects/a/manifest.json?v=")
        assert "v=old" not in url
        assert mock_get.call_args.kwargs["headers"]["Cache-Control"].startswith("no-cache")

    @patch("folio.http.httpx.get")
    def test_get_error_carries_status_and_body(self, mock_get):
        mock_get.return_value = _resp(403, content=b"forbidden")
        with pytest.raises(UpstreamFetchError) as exc:
            self._store().get("https://cdn/x")
        assert exc.value.status_code == 403
        assert "forbidden" in str(exc.value)

    @patch("folio.http.httpx.get")
    def test_get_not_retried(self, mock_get):
        mock_get.return_value = _resp(503, content=b"busy")
        with pytest.raises(UpstreamFetchError, match="503"):
            self._store().get("https://cdn/x")
        assert mock_get.call_count == 1

    @patch("folio.http.httpx.get")
    def test_get_unreachable(self, mock_get):
        mock_get.side_effect = httpx.ConnectError("refused")
        with pytest.raises(UpstreamFetchError) as exc:
            self._store().get("https://cdn/x")
        assert exc.value.status_code == 0

    @patch("folio.blobstore.httpx.get")
    def test_list_pages(self, mock_get):
        mock_get.side_effect = [
            _resp(200, {"blobs": [{"url": "u1", "pathname": "p1"}], "cursor": "c1", "hasMore": True}),
            _resp(200, {"blobs": [{"url": "u2", "pathname": "p2"}], "hasMore": False}),
        ]
        items = self._store().list_all("projects/")
        assert [o.url for o in items] == ["u1", "u2"]
        assert mock_get.call_args_list[1].kwargs["params"]["cursor"] == "c1"

    @patch("folio.blobstore.httpx.post")
    def test_delete_batches(self, mock_post):
        mock_post.return_value = _resp(200, {})
        self._store().delete(["u1", "u2"])
        assert mock_post.call_count == 1
        assert mock_post.call_args.kwargs["json"] == {"urls": ["u1", "u2"]}

    @patch("folio.blobstore.httpx.post")
    def test_delete_empty_noop(self, mock_post):
        self._store().delete([])
        mock_post.assert_not_called()

    @patch("folio.http.httpx.get")
    def test_probe_statuses(self, mock_get):
        store = self._store()
        mock_get.return_value = _resp(200)
        assert store.probe("u") is Existence.EXISTS
        mock_get.return_value = _resp(404)
        assert store.probe("u") is Existence.MISSING
        mock_get.return_value = _resp(500)
        assert store.probe("u") is Existence.UNKNOWN

    @patch("folio.http.httpx.get")
    def test_probe_timeout_is_unknown(self, mock_get):
        mock_get.side_effect = httpx.ReadTimeout("slow")
        assert self._store().probe("u") is Existence.UNKNOWN
