"""Asset lifecycle: record, delete, prune, rebuild, restore, tag.

Every operation follows the same shape: validate input, load the manifest
at the caller's address, check it belongs to the project, do the slow
part (listing, probing, AI calls) against that copy, then re-load the
*latest* manifest, merge the delta into it through :mod:`folio.ledger`
(which never resurrects a tombstoned id), log a line, save, and hand back
the new address. There are no locks: two racing writers can both read
before either saves and the later save wins, except that a tombstone
written in between is always honoured by the merge.
"""

from __future__ import annotations

import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from folio.blobstore import BlobStore, Existence
from folio.cancellation import check_cancelled
from folio.discovery import discover_assets, discover_pages, group_by_page, objects_for_asset
from folio.docai import DocAiDocument, page_text, parse_docai
from folio.errors import MismatchError, NotFoundError, UpstreamFetchError, ValidationError
from folio.ledger import (
    TagUpdate,
    apply_tag_update,
    delete_asset_everywhere,
    ensure_page,
    is_tombstoned,
    iter_assets,
    merge_incoming_assets,
    remove_assets,
    sort_assets,
    sort_pages,
    upsert_asset,
)
from folio.manifest import ManifestStore
from folio.models import BBox, Manifest, PageAsset, PageImage
from folio.naming import assets_prefix
from folio.tagging import Tagger, TaggingRules, normalize_tags

logger = logging.getLogger("folio")


# ---------------------------------------------------------------------------
# Validation and loading, shared with pages/projects/detect
# ---------------------------------------------------------------------------


def require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"missing {name}")
    return value.strip()


def require_page_number(value: Any, name: str = "pageNumber") -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a positive integer")
    if not math.isfinite(value) or value != int(value) or value < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return int(value)


def require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number")
    return value


def parse_bbox(value: Any, name: str = "bbox") -> BBox:
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object with x, y, w, h")
    return BBox(*(require_number(value.get(k), f"{name}.{k}") for k in ("x", "y", "w", "h")))


def parse_incoming_asset(value: Any, index: int | None = None) -> PageAsset:
    """Validate one ``{assetId, url, bbox[, tags, tagRationale]}`` record."""
    where = f"assets[{index}]." if index is not None else ""
    if not isinstance(value, dict):
        raise ValidationError(f"{where.rstrip('.') or 'asset'} must be an object")
    tags = value.get("tags")
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        raise ValidationError(f"{where}tags must be a list of strings")
    rationale = value.get("tagRationale")
    return PageAsset(
        asset_id=require_text(value.get("assetId"), f"{where}assetId"),
        url=require_text(value.get("url"), f"{where}url"),
        bbox=parse_bbox(value.get("bbox"), f"{where}bbox"),
        tags=list(tags) if tags is not None else None,
        tag_rationale=rationale if isinstance(rationale, str) else None,
    )


def load_checked(store: ManifestStore, project_id: str, manifest_url: str, when: str = "") -> Manifest:
    """Load the manifest and insist it belongs to ``project_id``."""
    manifest = store.load(manifest_url)
    if manifest.project_id != project_id:
        raise MismatchError(project_id, manifest.project_id, when)
    return manifest


def load_latest(store: ManifestStore, project_id: str, address: str) -> Manifest:
    return load_checked(store, project_id, address, when="on latest fetch")


def require_page(manifest: Manifest, page_number: int) -> PageImage:
    page = manifest.page(page_number)
    if page is None:
        raise NotFoundError(
            f"Page {page_number}", hint="Record the page before recording or deleting its assets."
        )
    return page


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class RecordResult:
    manifest_url: str
    saved: bool = True


@dataclass
class BulkRecordResult:
    manifest_url: str
    count: int = 0
    dropped: int = 0


@dataclass
class DeleteResult:
    manifest_url: str
    deleted_count: int = 0


@dataclass
class PruneResult:
    manifest_url: str
    checked: int = 0
    removed: int = 0
    unknown: int = 0


@dataclass
class RebuildResult:
    manifest_url: str
    pages_touched: int = 0
    total_assets_after: int = 0


@dataclass
class RestoreResult:
    manifest_url: str
    pages_found: int = 0
    assets_found: int = 0
    pages_in_manifest: int = 0


@dataclass
class TaggingSummary:
    manifest_url: str
    scanned: int = 0
    tagged: int = 0
    applied: int = 0
    stale: int = 0


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


def record_asset(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    page_number: Any,
    asset_id: Any,
    url: Any,
    bbox: Any,
) -> RecordResult:
    """Record one cropped asset on a page.

    A tombstoned id is a success that changes nothing: the caller gets the
    same address back and no save happens.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    asset = parse_incoming_asset({"assetId": asset_id, "url": url, "bbox": bbox})
    page_number = require_page_number(page_number)

    manifest = load_checked(store, project_id, manifest_url)
    page = require_page(manifest, page_number)
    if not upsert_asset(page, asset):
        return RecordResult(manifest_url=manifest_url, saved=False)
    store.append_debug(manifest, f"record asset {asset.asset_id} on page {page_number}")
    return RecordResult(manifest_url=store.save(manifest))


def record_assets_bulk(
    store: ManifestStore,
    project_id: str,
    manifest_url: str,
    page_number: Any,
    assets: Any,
) -> BulkRecordResult:
    """Merge many asset records into one page in a single save.

    Every record is validated before any is applied. Tombstoned ids are
    dropped one by one and counted in ``dropped``.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    page_number = require_page_number(page_number)
    if not isinstance(assets, list):
        raise ValidationError("assets must be a list")
    incoming = [parse_incoming_asset(a, i) for i, a in enumerate(assets)]
    if not incoming:
        return BulkRecordResult(manifest_url=manifest_url)

    manifest = load_checked(store, project_id, manifest_url)
    page = require_page(manifest, page_number)
    outcome = merge_incoming_assets(page, incoming)
    store.append_debug(
        manifest,
        f"record {outcome.upserted} assets on page {page_number}"
        + (f" ({outcome.dropped} deleted ids dropped)" if outcome.dropped else ""),
    )
    return BulkRecordResult(
        manifest_url=store.save(manifest), count=len(incoming), dropped=outcome.dropped
    )


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def delete_asset(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    page_number: Any,
    asset_id: Any,
    asset_url: str | None = None,
) -> DeleteResult:
    """Remove an asset's blobs and tombstone its id.

    The page must exist before any blob is touched. Physical deletion
    happens first and is not rolled back if the manifest save then
    fails. Running it again is harmless and reports zero objects deleted.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    page_number = require_page_number(page_number)
    asset_id = require_text(asset_id, "assetId")
    require_page(load_checked(store, project_id, manifest_url), page_number)

    objects = objects_for_asset(blobs, project_id, page_number, asset_id)
    urls = [o.url for o in objects]
    if asset_url and assets_prefix(project_id) not in urlsplit(asset_url).path:
        urls.append(asset_url)
    if urls:
        blobs.delete(urls)
    logger.info("Deleted %d objects for %s/%s", len(objects), project_id, asset_id)

    latest = load_latest(store, project_id, manifest_url)
    page = require_page(latest, page_number)
    delete_asset_everywhere(page, asset_id)
    store.append_debug(latest, f"delete asset {asset_id} on page {page_number} ({len(objects)} blobs)")
    return DeleteResult(manifest_url=store.save(latest), deleted_count=len(objects))


# ---------------------------------------------------------------------------
# Prune
# ---------------------------------------------------------------------------


def probe_all(blobs: BlobStore, urls: list[str], workers: int = 1) -> list[Existence]:
    """Probe each URL; results line up with ``urls``."""
    if workers <= 1 or len(urls) <= 1:
        return [blobs.probe(u) for u in urls]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(blobs.probe, urls))


def prune_missing_assets(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    *,
    probe_workers: int = 1,
) -> PruneResult:
    """Drop asset records whose blob is definitely gone.

    Only a 404/410 counts as gone. Anything else (5xx, timeouts, network
    errors) is ``unknown`` and the record stays. Pruned ids are not
    tombstoned.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    manifest = load_checked(store, project_id, manifest_url)

    targets = [(p.page_number, a.asset_id, a.url) for p, a in iter_assets(manifest)]
    verdicts = probe_all(blobs, [t[2] for t in targets], probe_workers)
    missing: dict[int, set[str]] = {}
    unknown = 0
    for (page_number, asset_id, url), verdict in zip(targets, verdicts):
        if verdict is Existence.MISSING:
            missing.setdefault(page_number, set()).add(asset_id)
        elif verdict is Existence.UNKNOWN:
            unknown += 1
            logger.warning("Existence unknown for %s (%s); keeping it", asset_id, url)

    latest = load_latest(store, project_id, manifest_url)
    removed = 0
    for page_number, ids in missing.items():
        page = latest.page(page_number)
        if page is not None:
            removed += remove_assets(page, ids)
    store.append_debug(
        latest, f"prune checked {len(targets)} assets, removed {removed}, unknown {unknown}"
    )
    return PruneResult(
        manifest_url=store.save(latest), checked=len(targets), removed=removed, unknown=unknown
    )


# ---------------------------------------------------------------------------
# Rebuild / restore from storage
# ---------------------------------------------------------------------------


def rebuild_index(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
    *,
    probe_workers: int = 1,
) -> RebuildResult:
    """Make each page's ``assets`` match what storage actually holds.

    Listing is ground truth; listed objects that probe as gone are skipped
    because listings can lag deletes. Existing bbox and tags are carried
    over, tombstoned ids are never listed.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    load_checked(store, project_id, manifest_url)

    found = discover_assets(blobs, project_id)
    candidates = list(found.values())
    verdicts = probe_all(blobs, [c.url for c in candidates], probe_workers)
    live = {
        (c.page_number, c.asset_id): c
        for c, verdict in zip(candidates, verdicts)
        if verdict is not Existence.MISSING
    }
    by_page = group_by_page(live)

    latest = load_latest(store, project_id, manifest_url)
    for page_number in by_page:
        ensure_page(latest, page_number)
    sort_pages(latest)

    touched = 0
    total = 0
    for page in latest.pages:
        existing = {a.asset_id: a for a in page.assets}
        rebuilt = []
        for d in by_page.get(page.page_number, []):
            if is_tombstoned(page, d.asset_id):
                continue
            prev = existing.get(d.asset_id)
            rebuilt.append(
                PageAsset(
                    asset_id=d.asset_id,
                    url=d.url,
                    bbox=prev.bbox if prev is not None else BBox.zero(),
                    tags=prev.tags if prev is not None else None,
                    tag_rationale=prev.tag_rationale if prev is not None else None,
                    extra=prev.extra if prev is not None else {},
                )
            )
        page.assets = rebuilt
        sort_assets(page)
        touched += 1
        total += len(page.assets)

    store.append_debug(latest, f"rebuild index: {total} assets across {touched} pages")
    return RebuildResult(manifest_url=store.save(latest), pages_touched=touched, total_assets_after=total)


def restore_from_storage(
    store: ManifestStore,
    blobs: BlobStore,
    project_id: str,
    manifest_url: str,
) -> RestoreResult:
    """Add pages and assets found in storage that the manifest lost.

    Purely additive: nothing is removed and tombstoned ids stay deleted.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    load_checked(store, project_id, manifest_url)

    pages_found = discover_pages(blobs, project_id)
    assets_found = discover_assets(blobs, project_id)

    latest = load_latest(store, project_id, manifest_url)
    for n, found_page in pages_found.items():
        page = ensure_page(latest, n, url=found_page.url)
        if not page.url:
            page.url = found_page.url
    for page_number, found_assets in group_by_page(assets_found).items():
        page = ensure_page(latest, page_number)
        for d in found_assets:
            if is_tombstoned(page, d.asset_id):
                continue
            existing = page.asset(d.asset_id)
            if existing is None:
                page.assets.append(PageAsset(asset_id=d.asset_id, url=d.url))
            elif not existing.url:
                existing.url = d.url
        sort_assets(page)
    sort_pages(latest)

    store.append_debug(
        latest, f"restore: {len(pages_found)} page blobs, {len(assets_found)} asset blobs"
    )
    return RestoreResult(
        manifest_url=store.save(latest),
        pages_found=len(pages_found),
        assets_found=len(assets_found),
        pages_in_manifest=len(latest.pages),
    )


# ---------------------------------------------------------------------------
# Tagging
# ---------------------------------------------------------------------------


def load_docai(blobs: BlobStore, manifest: Manifest) -> DocAiDocument:
    content = blobs.get(manifest.doc_ai_json["url"])
    try:
        raw = json.loads(content.data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UpstreamFetchError("Document AI JSON", 200, f"Stored docai.json is not valid JSON: {e}") from e
    return parse_docai(raw)


def tag_assets(
    store: ManifestStore,
    blobs: BlobStore,
    tagger: Tagger,
    project_id: str,
    manifest_url: str,
    *,
    overwrite: bool = False,
    limit_assets: int = 0,
) -> TaggingSummary:
    """Tag every untagged asset, then apply the tags to the latest manifest.

    Updates are held in memory until the whole pass succeeds. A failure or
    cancellation part-way saves nothing. Assets deleted while the pass ran
    are skipped at apply time and counted as ``stale``.
    """
    project_id = require_text(project_id, "projectId")
    manifest_url = require_text(manifest_url, "manifestUrl")
    if isinstance(limit_assets, bool) or not isinstance(limit_assets, int) or limit_assets < 0:
        raise ValidationError("limitAssets must be a non-negative integer")
    manifest = load_checked(store, project_id, manifest_url)
    if not manifest.doc_ai_json:
        raise ValidationError("missing docAiJson (process the document first)")
    if not manifest.pages:
        raise ValidationError("no pages in manifest (rasterize the source first)")

    doc = load_docai(blobs, manifest)
    rules = TaggingRules.from_settings(manifest.settings)

    updates: list[TagUpdate] = []
    scanned = 0
    texts: dict[int, str] = {}
    for page, asset in iter_assets(manifest):
        if limit_assets and scanned >= limit_assets:
            break
        if is_tombstoned(page, asset.asset_id):
            continue
        scanned += 1
        if asset.tags and not overwrite:
            continue
        check_cancelled(f"tagging {asset.asset_id}")
        if page.page_number not in texts:
            texts[page.page_number] = page_text(doc, page.page_number)
        image = blobs.get(asset.url).data
        result = tagger.tag(image, texts[page.page_number], rules)
        updates.append(
            TagUpdate(
                page_number=page.page_number,
                asset_id=asset.asset_id,
                tags=normalize_tags(result.tags, rules.max_tags),
                rationale=result.rationale,
            )
        )
        logger.debug("Tagged %s: %s", asset.asset_id, ", ".join(updates[-1].tags))

    if not updates:
        return TaggingSummary(manifest_url=manifest_url, scanned=scanned)

    check_cancelled("tag apply")
    latest = load_latest(store, project_id, manifest_url)
    applied = 0
    for update in updates:
        if apply_tag_update(latest, update):
            applied += 1
        else:
            logger.warning("Tags for %s not applied: asset gone or deleted", update.asset_id)
    stale = len(updates) - applied
    store.append_debug(latest, f"tagged {applied} assets ({stale} stale, {scanned} scanned)")
    return TaggingSummary(
        manifest_url=store.save(latest),
        scanned=scanned,
        tagged=len(updates),
        applied=applied,
        stale=stale,
    )
