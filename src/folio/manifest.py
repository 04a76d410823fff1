"""Read and write the per-project manifest blob.

The manifest is overwritten at one fixed path on every save, so reads go
around every cache layer and each save returns a fresh address the caller
must use next. There is no locking by default: the last save wins. With
``conditional=True`` the version tag seen at load time becomes a write
precondition and a lost race raises :class:`~folio.errors.ConflictError`.
"""

from __future__ import annotations

import json
import logging

from folio.blobstore import BlobStore
from folio.errors import UpstreamFetchError
from folio.models import DEBUG_LOG_MAX, Manifest
from folio.naming import manifest_path

logger = logging.getLogger("folio")

MANIFEST_CONTENT_TYPE = "application/json"


class ManifestStore:
    """Load/save manifests through a :class:`BlobStore`."""

    def __init__(
        self,
        blobs: BlobStore,
        *,
        conditional: bool = False,
        debug_log_max: int = DEBUG_LOG_MAX,
    ):
        self.blobs = blobs
        self.conditional = conditional
        self.debug_log_max = debug_log_max

    def load(self, address: str) -> Manifest:
        """Fetch and parse the manifest at ``address``.

        Raises:
            UpstreamFetchError: Non-success response, malformed JSON, or no projectId.
        """
        content = self.blobs.get(address)
        try:
            data = json.loads(content.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise UpstreamFetchError("Manifest", 200, f"Manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not data.get("projectId"):
            raise UpstreamFetchError("Manifest", 200, "Manifest has no projectId.")
        manifest = Manifest.from_dict(data)
        manifest.version_tag = content.etag
        logger.debug("Loaded manifest %s (%d pages)", manifest.project_id, len(manifest.pages))
        return manifest

    def load_if_exists(self, address: str) -> Manifest | None:
        """Like :meth:`load`, but an unreadable manifest counts as absent."""
        if not address:
            return None
        try:
            return self.load(address)
        except UpstreamFetchError as e:
            logger.info("Manifest at %s unreadable, treating as missing: %s", address, e)
            return None

    def save(self, manifest: Manifest) -> str:
        """Overwrite the manifest blob and return its new public address."""
        path = manifest_path(manifest.project_id)
        data = manifest.to_json().encode("utf-8")
        if_match = manifest.version_tag if self.conditional else None
        obj = self.blobs.put(path, data, MANIFEST_CONTENT_TYPE, if_match=if_match)
        logger.info("Saved manifest %s (%d bytes)", manifest.project_id, len(data))
        return obj.url

    def new_manifest(self, project_id: str) -> Manifest:
        return Manifest.new(project_id)

    def append_debug(self, manifest: Manifest, line: str) -> None:
        manifest.log(line, limit=self.debug_log_max)
