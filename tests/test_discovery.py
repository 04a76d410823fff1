"""Tests for folio.discovery: what storage holds, decoded."""

from folio.blobstore import LocalBlobStore
from folio.discovery import (
    discover_assets,
    discover_pages,
    group_by_page,
    objects_for_asset,
    pick_winner,
)


def _put(blobs: LocalBlobStore, path: str) -> str:
    return blobs.put(path, b"x", "image/png").url


class TestPickWinner:
    def test_longer_wins(self):
        assert pick_winner("https://x/a.png", "https://x/a-suffix.png") == "https://x/a-suffix.png"

    def test_tie_lexicographic(self):
        assert pick_winner("https://x/b.png", "https://x/a.png") == "https://x/b.png"
        assert pick_winner("https://x/a.png", "https://x/b.png") == "https://x/b.png"


class TestDiscoverAssets:
    def test_decodes_and_ignores_junk(self, blobs: LocalBlobStore):
        _put(blobs, "projects/pid/assets/p1/p1-img01.png")
        _put(blobs, "projects/pid/assets/p2/p2-img03-Abc.png")
        _put(blobs, "projects/pid/assets/p2/p3-img01.png")  # folder/id mismatch
        _put(blobs, "projects/pid/assets/p1/notes.txt")
        found = discover_assets(blobs, "pid")
        assert sorted(found) == [(1, "p1-img01"), (2, "p2-img03")]

    def test_duplicates_resolved(self, blobs: LocalBlobStore):
        _put(blobs, "projects/pid/assets/p1/p1-img01.png")
        _put(blobs, "projects/pid/assets/p1/p1-img01-AAA.png")
        _put(blobs, "projects/pid/assets/p1/p1-img01-BBB.png")
        found = discover_assets(blobs, "pid")
        assert found[(1, "p1-img01")].pathname == "projects/pid/assets/p1/p1-img01-BBB.png"

    def test_other_projects_excluded(self, blobs: LocalBlobStore):
        _put(blobs, "projects/other/assets/p1/p1-img01.png")
        assert discover_assets(blobs, "pid") == {}

    def test_group_by_page(self, blobs: LocalBlobStore):
        _put(blobs, "projects/pid/assets/p1/p1-img02.png")
        _put(blobs, "projects/pid/assets/p1/p1-img01.png")
        _put(blobs, "projects/pid/assets/p3/p3-img01.png")
        grouped = group_by_page(discover_assets(blobs, "pid"))
        assert sorted(grouped) == [1, 3]
        assert [a.asset_id for a in grouped[1]] == ["p1-img01", "p1-img02"]


class TestDiscoverPages:
    def test_pages(self, blobs: LocalBlobStore):
        _put(blobs, "projects/pid/pages/page-1.png")
        _put(blobs, "projects/pid/pages/page-12.png")
        _put(blobs, "projects/pid/pages/cover.png")
        assert sorted(discover_pages(blobs, "pid")) == [1, 12]


class TestObjectsForAsset:
    def test_exact_id_only(self, blobs: LocalBlobStore):
        _put(blobs, "projects/pid/assets/p1/p1-img10.png")
        _put(blobs, "projects/pid/assets/p1/p1-img10-XYZ.png")
        _put(blobs, "projects/pid/assets/p1/p1-img100.png")
        objs = objects_for_asset(blobs, "pid", 1, "p1-img10")
        assert sorted(o.pathname for o in objs) == [
            "projects/pid/assets/p1/p1-img10-XYZ.png",
            "projects/pid/assets/p1/p1-img10.png",
        ]

    def test_none(self, blobs: LocalBlobStore):
        assert objects_for_asset(blobs, "pid", 1, "p1-img01") == []
