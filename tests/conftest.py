"""Shared test fixtures for Folio."""

from __future__ import annotations

from pathlib import Path

import fitz
import pytest

from folio.blobstore import LocalBlobStore
from folio.manifest import ManifestStore
from folio.pages import record_page
from folio.projects import create_project

BASE_URL = "https://blob.test/store"


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    """Blob store rooted in a temp directory."""
    return LocalBlobStore(tmp_path / "blob", BASE_URL)


@pytest.fixture
def store(blobs: LocalBlobStore) -> ManifestStore:
    return ManifestStore(blobs)


@pytest.fixture
def project(store: ManifestStore) -> tuple[str, str]:
    """A fresh project with page 1 recorded. Returns (project_id, manifest_url)."""
    created = create_project(store)
    result = record_page(
        store, created.project_id, created.manifest_url, 1, f"{BASE_URL}/p1.png", 1200, 1600
    )
    return created.project_id, result.manifest_url


def make_pdf(pages: int = 2, text: str = "Page {n} text.") -> bytes:
    """A small letter-size PDF with one line of text and a filled box per page."""
    doc = fitz.open()
    for n in range(1, pages + 1):
        page = doc.new_page(width=612, height=792)
        page.insert_text(fitz.Point(72, 72), text.format(n=n))
        page.draw_rect(fitz.Rect(100, 200, 400, 500), color=(0, 0, 1), fill=(0.2, 0.4, 0.8))
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf()
