"""In-memory merge rules for pages, assets and tombstones.

Everything here mutates a :class:`~folio.models.Manifest` or
:class:`~folio.models.PageImage` in place and touches no network. The
single rule the rest of the code leans on: an asset id listed in a page's
``deletedAssetIds`` never reappears in that page's ``assets``, whatever a
merge is handed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from folio.models import Manifest, PageAsset, PageImage
from folio.naming import parse_asset_id

logger = logging.getLogger("folio")


@dataclass
class MergeOutcome:
    upserted: int = 0
    dropped: int = 0


@dataclass(frozen=True)
class TagUpdate:
    """Tags computed for one asset, applied later to the latest manifest."""

    page_number: int
    asset_id: str
    tags: list[str]
    rationale: str = ""


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


def find_page(manifest: Manifest, page_number: int) -> PageImage | None:
    return manifest.page(page_number)


def sort_pages(manifest: Manifest) -> None:
    manifest.pages.sort(key=lambda p: p.page_number)


def ensure_page(manifest: Manifest, page_number: int, url: str = "") -> PageImage:
    """Return the page, creating an empty zero-size one if absent."""
    page = manifest.page(page_number)
    if page is None:
        page = PageImage(page_number=page_number, url=url)
        manifest.pages.append(page)
        sort_pages(manifest)
    return page


def upsert_page(manifest: Manifest, page_number: int, url: str, width: float, height: float) -> PageImage:
    """Set a page's raster geometry, keeping its assets, tombstones and tags."""
    page = manifest.page(page_number)
    if page is None:
        page = PageImage(page_number=page_number, url=url, width=width, height=height)
        manifest.pages.append(page)
    else:
        page.url = url
        page.width = width
        page.height = height
    sort_pages(manifest)
    return page


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


def tombstones(page: PageImage) -> set[str]:
    return set(page.deleted_asset_ids)


def is_tombstoned(page: PageImage, asset_id: str) -> bool:
    return asset_id in page.deleted_asset_ids


def sort_assets(page: PageImage) -> None:
    page.assets.sort(key=lambda a: a.asset_id)


def _refilter(page: PageImage) -> None:
    dead = tombstones(page)
    if dead:
        page.assets = [a for a in page.assets if a.asset_id not in dead]


def _keep_tags(existing: PageAsset | None, incoming: PageAsset) -> PageAsset:
    if existing is not None and incoming.tags is None and existing.tags is not None:
        incoming.tags = list(existing.tags)
        if incoming.tag_rationale is None:
            incoming.tag_rationale = existing.tag_rationale
    return incoming


def merge_incoming_assets(page: PageImage, incoming: Iterable[PageAsset]) -> MergeOutcome:
    """Upsert ``incoming`` into ``page`` by asset id.

    Tombstoned ids are dropped. Incoming url and bbox win; existing tags
    survive when the incoming record carries none. The result is sorted by
    asset id.
    """
    dead = tombstones(page)
    by_id = {a.asset_id: a for a in page.assets}
    out = MergeOutcome()
    for asset in incoming:
        if asset.asset_id in dead:
            out.dropped += 1
            logger.warning(
                "Dropped tombstoned asset %s on page %d", asset.asset_id, page.page_number
            )
            continue
        by_id[asset.asset_id] = _keep_tags(by_id.get(asset.asset_id), asset)
        out.upserted += 1
    page.assets = list(by_id.values())
    _refilter(page)
    sort_assets(page)
    return out


def upsert_asset(page: PageImage, asset: PageAsset) -> bool:
    """Replace or append one asset record. False (no change) if tombstoned."""
    if is_tombstoned(page, asset.asset_id):
        logger.warning("Refused to re-add tombstoned asset %s", asset.asset_id)
        return False
    for i, existing in enumerate(page.assets):
        if existing.asset_id == asset.asset_id:
            page.assets[i] = _keep_tags(existing, asset)
            break
    else:
        page.assets.append(asset)
    _refilter(page)
    sort_assets(page)
    return True


def tombstone(page: PageImage, asset_id: str) -> None:
    """Mark ``asset_id`` deleted on this page. Idempotent."""
    if asset_id not in page.deleted_asset_ids:
        page.deleted_asset_ids.append(asset_id)
    page.assets = [a for a in page.assets if a.asset_id != asset_id]


def delete_asset_everywhere(page: PageImage, asset_id: str) -> str | None:
    """Tombstone ``asset_id`` and return the url of the record removed, if any."""
    existing = page.asset(asset_id)
    tombstone(page, asset_id)
    return existing.url if existing is not None else None


def remove_assets(page: PageImage, asset_ids: Iterable[str]) -> int:
    """Drop asset records without tombstoning them. Returns how many went."""
    doomed = set(asset_ids)
    before = len(page.assets)
    page.assets = [a for a in page.assets if a.asset_id not in doomed]
    return before - len(page.assets)


def iter_assets(manifest: Manifest) -> Iterator[tuple[PageImage, PageAsset]]:
    """Yield ``(page, asset)`` with pages ascending and assets in array order."""
    for page in sorted(manifest.pages, key=lambda p: p.page_number):
        for asset in page.assets:
            yield page, asset


def next_asset_index(page: PageImage) -> int:
    """Smallest index above every live and tombstoned id on the page."""
    highest = 0
    for aid in [a.asset_id for a in page.assets] + list(page.deleted_asset_ids):
        parsed = parse_asset_id(aid)
        if parsed is not None and parsed[0] == page.page_number:
            highest = max(highest, parsed[1])
    return highest + 1


def apply_tag_update(manifest: Manifest, update: TagUpdate) -> bool:
    """Write tags onto a live asset. False when it vanished or was tombstoned."""
    page = manifest.page(update.page_number)
    if page is None or is_tombstoned(page, update.asset_id):
        return False
    asset = page.asset(update.asset_id)
    if asset is None:
        return False
    asset.tags = list(update.tags)
    asset.tag_rationale = update.rationale
    return True
