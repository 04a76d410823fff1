"""Find pages and assets that exist in blob storage, whatever the manifest says.

Listings are drained through the cursor and decoded with
:mod:`folio.naming`. Objects that don't follow the layout are ignored.
When several objects decode to the same logical page or asset (repeat
uploads with different random suffixes), one winner is picked
deterministically: the longer URL, then the lexicographically greater one.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from folio.blobstore import BlobObject, BlobStore
from folio.naming import (
    asset_prefix,
    assets_prefix,
    pages_prefix,
    parse_asset_path,
    parse_page_path,
)

logger = logging.getLogger("folio")


@dataclass(frozen=True)
class DiscoveredAsset:
    page_number: int
    asset_id: str
    url: str
    pathname: str


@dataclass(frozen=True)
class DiscoveredPage:
    page_number: int
    url: str
    pathname: str


def pick_winner(a: str, b: str) -> str:
    """Tie-break between two URLs for one logical object."""
    return max(a, b, key=lambda u: (len(u), u))


def list_all(blobs: BlobStore, prefix: str) -> list[BlobObject]:
    return blobs.list_all(prefix)


def discover_assets(blobs: BlobStore, project_id: str) -> dict[tuple[int, str], DiscoveredAsset]:
    """Every asset object under the project's asset prefix, one per id."""
    found: dict[tuple[int, str], DiscoveredAsset] = {}
    skipped = 0
    for obj in list_all(blobs, assets_prefix(project_id)):
        parsed = parse_asset_path(obj.pathname)
        if parsed is None or parsed.project_id != project_id:
            skipped += 1
            continue
        key = (parsed.page_number, parsed.asset_id)
        current = found.get(key)
        if current is not None and pick_winner(current.url, obj.url) == current.url:
            continue
        found[key] = DiscoveredAsset(parsed.page_number, parsed.asset_id, obj.url, obj.pathname)
    if skipped:
        logger.debug("Ignored %d non-asset objects for %s", skipped, project_id)
    return found


def discover_pages(blobs: BlobStore, project_id: str) -> dict[int, DiscoveredPage]:
    found: dict[int, DiscoveredPage] = {}
    for obj in list_all(blobs, pages_prefix(project_id)):
        parsed = parse_page_path(obj.pathname)
        if parsed is None or parsed.project_id != project_id:
            continue
        current = found.get(parsed.page_number)
        if current is not None and pick_winner(current.url, obj.url) == current.url:
            continue
        found[parsed.page_number] = DiscoveredPage(parsed.page_number, obj.url, obj.pathname)
    return found


def group_by_page(
    found: dict[tuple[int, str], DiscoveredAsset],
) -> dict[int, list[DiscoveredAsset]]:
    grouped: dict[int, list[DiscoveredAsset]] = defaultdict(list)
    for asset in found.values():
        grouped[asset.page_number].append(asset)
    return {n: sorted(items, key=lambda a: a.asset_id) for n, items in grouped.items()}


def objects_for_asset(
    blobs: BlobStore, project_id: str, page_number: int, asset_id: str
) -> list[BlobObject]:
    """All stored objects that decode to exactly this asset id.

    The listing prefix also matches longer ids (``p1-img10`` lists
    ``p1-img100``), so each hit is decoded and compared.
    """
    out = []
    for obj in list_all(blobs, asset_prefix(project_id, page_number, asset_id)):
        parsed = parse_asset_path(obj.pathname)
        if (
            parsed is not None
            and parsed.project_id == project_id
            and parsed.page_number == page_number
            and parsed.asset_id == asset_id
        ):
            out.append(obj)
    return out
