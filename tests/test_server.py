"""Tests for the MCP tool layer in folio.server.

Tools are called through their async wrappers with a LocalBlobStore
swapped in, so replies, error mapping and argument decoding are covered
without a client.
"""

import functools
import json
from pathlib import Path
from unittest.mock import patch

import anyio
import pytest

from folio import server
from folio.blobstore import LocalBlobStore
from folio.config import FolioConfig
from folio.manifest import ManifestStore

from conftest import BASE_URL, make_pdf

BOX = json.dumps({"x": 10, "y": 20, "w": 100, "h": 80})


@pytest.fixture(autouse=True)
def services(tmp_path, monkeypatch):
    blobs = LocalBlobStore(tmp_path / "blob", BASE_URL)
    svc = server.Services(config=FolioConfig(), blobs=blobs, store=ManifestStore(blobs))
    monkeypatch.setattr(server, "_services", svc)
    return svc


def call(tool, **kwargs) -> dict:
    return json.loads(anyio.run(functools.partial(tool, **kwargs)))


def _project() -> tuple[str, str]:
    created = call(server.create_project)
    pid = created["projectId"]
    page = call(
        server.record_page,
        project_id=pid,
        manifest_url=created["manifestUrl"],
        page_number=1,
        url=f"{BASE_URL}/p1.png",
        width=1200,
        height=1600,
    )
    return pid, page["manifestUrl"]


class TestReplies:
    def test_create_project(self):
        data = call(server.create_project)
        assert data["ok"] is True
        assert data["projectId"]
        assert data["manifestUrl"].startswith(BASE_URL)
        assert "next" in data["hints"]

    def test_list_projects(self):
        pid, _ = _project()
        data = call(server.list_projects)
        assert [row["projectId"] for row in data["projects"]] == [pid]

    def test_read_manifest(self):
        pid, url = _project()
        data = call(server.read_manifest, manifest_url=url)
        assert data["manifest"]["projectId"] == pid


class TestErrorMapping:
    def test_validation_error_is_reply(self):
        pid, url = _project()
        data = call(
            server.record_asset,
            project_id=pid,
            manifest_url=url,
            page_number=0,
            asset_id="p1-img01",
            url="u",
            bbox_json=BOX,
        )
        assert data["ok"] is False
        assert "pageNumber" in data["error"]

    def test_bad_json_argument(self):
        pid, url = _project()
        data = call(
            server.record_assets_bulk, project_id=pid, manifest_url=url, page_number=1, assets_json="[{"
        )
        assert data["ok"] is False
        assert "assets_json is not valid JSON" in data["error"]

    def test_mismatch(self):
        _, url = _project()
        data = call(server.prune_missing_assets, project_id="other", manifest_url=url)
        assert data["ok"] is False
        assert "does not match" in data["error"]

    def test_unexpected_exception_sanitized(self):
        with patch.object(server.projects, "create_project", side_effect=OSError("disk full at /home/me/blob")):
            data = call(server.create_project)
        assert data["ok"] is False
        assert data["error"].startswith("Internal error in create_project: OSError")
        assert "/home/me" not in data["error"]

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        pid, url = _project()
        data = call(server.tag_assets, project_id=pid, manifest_url=url)
        assert data["ok"] is False
        assert "OPENAI_API_KEY" in data["error"]

    def test_docai_endpoint_required(self):
        pid, url = _project()
        data = call(server.process_document, project_id=pid, manifest_url=url)
        assert data["ok"] is False
        assert "docai.endpoint" in data["error"]


class TestTextTools:
    def test_settings_help_bad_messages_json(self):
        data = call(server.settings_help, messages_json="[{")
        assert data["ok"] is False
        assert "messages_json is not valid JSON" in data["error"]

    def test_fill_schema_needs_gemini_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        pid, url = _project()
        data = call(server.fill_schema, project_id=pid, manifest_url=url)
        assert data["ok"] is False
        assert "GEMINI_API_KEY" in data["error"]

    def test_format_text_reply(self, monkeypatch, services):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        pid, url = _project()
        m = services.store.load(url)
        m.extracted_text = {"url": services.blobs.put(f"projects/{pid}/extracted/text.txt", b"a\nb", "text/plain").url}
        url = services.store.save(m)
        with patch.object(server.GeminiClient, "generate", return_value="a b"):
            data = call(server.format_text, project_id=pid, manifest_url=url)
        assert data["ok"] is True
        assert data["textLength"] == 3
        assert data["formattedTextUrl"].startswith(f"{BASE_URL}/projects/{pid}/extracted/formatted.txt")


class TestAssetTools:
    def test_record_delete_rerecord(self):
        pid, url = _project()
        url = call(
            server.record_asset,
            project_id=pid,
            manifest_url=url,
            page_number=1,
            asset_id="p1-img01",
            url="https://x/a.png",
            bbox_json=BOX,
        )["manifestUrl"]
        deleted = call(server.delete_asset, project_id=pid, manifest_url=url, page_number=1, asset_id="p1-img01")
        assert deleted["deletedCount"] == 0
        assets = json.dumps([{"assetId": "p1-img01", "url": "https://x/a.png", "bbox": json.loads(BOX)}])
        bulk = call(
            server.record_assets_bulk,
            project_id=pid,
            manifest_url=deleted["manifestUrl"],
            page_number=1,
            assets_json=assets,
        )
        assert bulk["dropped"] == 1
        page = call(server.read_manifest, manifest_url=bulk["manifestUrl"])["manifest"]["pages"][0]
        assert page["assets"] == []
        assert page["deletedAssetIds"] == ["p1-img01"]

    def test_rebuild_and_restore(self, services):
        pid, url = _project()
        services.blobs.put(f"projects/{pid}/assets/p2/p2-img01.png", b"png", "image/png")
        rebuilt = call(server.rebuild_index, project_id=pid, manifest_url=url)
        assert rebuilt["totalAssetsAfter"] == 1
        restored = call(server.restore_from_storage, project_id=pid, manifest_url=rebuilt["manifestUrl"])
        assert restored["assetsFound"] == 1
        assert restored["pagesInManifest"] == 2

    def test_detect_with_docai_source_needs_no_key(self):
        pid, url = _project()
        data = call(server.detect_assets, project_id=pid, manifest_url=url, source="docai")
        assert data["ok"] is False
        assert "docAiJson" in data["error"]


class TestFileTools:
    def test_upload_source_and_rasterize(self, tmp_path: Path):
        pid, url = _project()
        pdf = tmp_path / "paper.pdf"
        pdf.write_bytes(make_pdf(pages=1))
        uploaded = call(server.upload_source, project_id=pid, pdf_path=str(pdf), manifest_url=url)
        assert uploaded["sourcePdfUrl"].startswith(f"{BASE_URL}/projects/{pid}/source/source.pdf")
        manifest = call(server.read_manifest, manifest_url=uploaded["manifestUrl"])["manifest"]
        assert manifest["sourcePdf"]["filename"] == "paper.pdf"

        raster = call(server.rasterize_pages, project_id=pid, manifest_url=uploaded["manifestUrl"], zoom=1.0)
        assert raster["count"] == 1
        assert raster["pages"][0]["width"] == 612

    def test_upload_missing_file(self, tmp_path: Path):
        pid, url = _project()
        data = call(server.upload_source, project_id=pid, pdf_path=str(tmp_path / "nope.pdf"))
        assert data["ok"] is False
        assert "not a readable file" in data["error"]


class TestSettingsTool:
    def test_save_settings(self):
        pid, url = _project()
        data = call(
            server.save_settings,
            project_id=pid,
            manifest_url=url,
            ai_rules="be brief",
            history_json='{"edits": 1}',
        )
        settings = call(server.read_manifest, manifest_url=data["manifestUrl"])["manifest"]["settings"]
        assert settings["aiRules"] == "be brief"
        assert settings["history"] == {"edits": 1}

    def test_bad_tagging_json(self):
        pid, url = _project()
        data = call(server.save_settings, project_id=pid, manifest_url=url, tagging_json="{")
        assert data["ok"] is False
        assert "taggingJson" in data["error"]


class TestLogging:
    def test_file_log_attached_once(self, tmp_path, monkeypatch):
        monkeypatch.setattr(server, "_file_handler", None)
        server._attach_file_log(tmp_path / "logs")
        first = server._file_handler
        server._attach_file_log(tmp_path / "other")
        try:
            assert server._file_handler is first
            assert (tmp_path / "logs" / "server.log").exists()
            assert not (tmp_path / "other").exists()
        finally:
            server.logger.removeHandler(first)
            first.close()
