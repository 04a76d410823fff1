"""Blob object storage.

The store is an external collaborator: content PUT/GET/LIST/DELETE by
path, each object reachable at a public URL. Two backends:

- ``LocalBlobStore`` - a directory on disk fronted by a public base URL.
  Used in development and tests. Supports conditional writes.
- ``HttpBlobStore`` - a REST blob service reached with httpx
  (``PUT {api}/{pathname}``, ``GET {api}?prefix=&limit=&cursor=``,
  ``POST {api}/delete``), with object reads going straight to the public
  URL with cache-busting.

Reads always bypass caches. Deletes are idempotent: absence is the goal.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from folio.errors import ConflictError, UpstreamFetchError
from folio.filelock import LOCK_SUFFIX, blob_lock
from folio.http import NO_CACHE_HEADERS, base_url, error_text, get_fresh

logger = logging.getLogger("folio")

LIST_LIMIT = 1000
PROBE_TIMEOUT = 10.0

_SUFFIX_ALPHABET = string.ascii_letters + string.digits
_TMP_SUFFIX = ".tmp"


class Existence(str, Enum):
    """Outcome of probing an object URL."""

    EXISTS = "exists"
    MISSING = "missing"
    UNKNOWN = "unknown"


def classify_status(status_code: int) -> Existence:
    """Map an HTTP status to an existence verdict.

    Only an unambiguous not-found counts as missing.
    """
    if 200 <= status_code < 300:
        return Existence.EXISTS
    if status_code in (404, 410):
        return Existence.MISSING
    return Existence.UNKNOWN


@dataclass(frozen=True)
class BlobObject:
    """A stored object: its public URL and its path inside the store."""

    url: str
    pathname: str


@dataclass(frozen=True)
class BlobContent:
    """Bytes read from the store plus the version tag they were read at."""

    data: bytes
    etag: str | None = None
    content_type: str = ""


@dataclass(frozen=True)
class ListPage:
    """One page of a listing. ``cursor`` is None on the last page."""

    items: list[BlobObject]
    cursor: str | None = None


def random_suffix(length: int = 10) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def with_suffix(pathname: str, suffix: str) -> str:
    """Insert ``-{suffix}`` before the extension of ``pathname``."""
    stem, dot, ext = pathname.rpartition(".")
    if not dot or "/" in ext:
        return f"{pathname}-{suffix}"
    return f"{stem}-{suffix}.{ext}"


class BlobStore(ABC):
    """Capability interface consumed by the manifest and lifecycle code."""

    @abstractmethod
    def put(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
        *,
        add_random_suffix: bool = False,
        if_match: str | None = None,
    ) -> BlobObject:
        """Write an object (full overwrite) and return where it lives.

        Raises:
            ConflictError: ``if_match`` was given and the stored version differs.
            UpstreamFetchError: The store rejected the write.
        """

    @abstractmethod
    def get(self, url: str) -> BlobContent:
        """Read an object, bypassing caches.

        Raises:
            UpstreamFetchError: Non-success response (message carries the status).
        """

    @abstractmethod
    def list(self, prefix: str, limit: int = LIST_LIMIT, cursor: str | None = None) -> ListPage: ...

    @abstractmethod
    def delete(self, urls: list[str]) -> None:
        """Batch delete. Already-absent objects are not an error."""

    @abstractmethod
    def probe(self, url: str) -> Existence:
        """Check whether an object exists. Never raises."""

    def list_all(self, prefix: str, limit: int = LIST_LIMIT) -> list[BlobObject]:
        """Drain every listing page under ``prefix``."""
        out: list[BlobObject] = []
        cursor: str | None = None
        while True:
            page = self.list(prefix, limit=limit, cursor=cursor)
            out.extend(page.items)
            if not page.cursor:
                break
            cursor = page.cursor
        logger.debug("Listed %d objects under %s", len(out), prefix)
        return out


# ---------------------------------------------------------------------------
# Local filesystem backend
# ---------------------------------------------------------------------------


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory.

    Object ``pathname`` lives at ``root / pathname`` and is published as
    ``{public_base_url}/{pathname}``. Returned URLs carry ``?v=<etag>`` so
    every overwrite yields a new address, like a versioning CDN.
    """

    def __init__(self, root: Path, public_base_url: str = "http://localhost/blob"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _file(self, pathname: str) -> Path:
        parts = [p for p in pathname.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts) or "\0" in pathname:
            raise UpstreamFetchError("Blob storage", 400, f"Unsafe pathname '{pathname}'.")
        return self.root.joinpath(*parts)

    def _pathname_for(self, url: str) -> str | None:
        prefix = self.public_base_url + "/"
        bare = base_url(url)
        if not bare.startswith(prefix):
            return None
        return bare[len(prefix):]

    def _etag(self, path: Path) -> str | None:
        if not path.is_file():
            return None
        return hashlib.sha256(path.read_bytes()).hexdigest()

    def url_for(self, pathname: str) -> str:
        return f"{self.public_base_url}/{pathname}"

    def put(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
        *,
        add_random_suffix: bool = False,
        if_match: str | None = None,
    ) -> BlobObject:
        if add_random_suffix:
            pathname = with_suffix(pathname, random_suffix())
        target = self._file(pathname)
        target.parent.mkdir(parents=True, exist_ok=True)
        with blob_lock(target, pathname=pathname):
            if if_match is not None and self._etag(target) != if_match:
                raise ConflictError(pathname)
            tmp = target.with_suffix(target.suffix + _TMP_SUFFIX)
            tmp.write_bytes(data)
            tmp.replace(target)
        etag = hashlib.sha256(data).hexdigest()
        logger.debug("PUT %s (%d bytes, %s)", pathname, len(data), content_type)
        return BlobObject(url=f"{self.url_for(pathname)}?v={etag[:12]}", pathname=pathname)

    def get(self, url: str) -> BlobContent:
        pathname = self._pathname_for(url)
        if pathname is None:
            raise UpstreamFetchError("Blob storage", 404, f"'{url}' is not served by this store.")
        path = self._file(pathname)
        if not path.is_file():
            raise UpstreamFetchError("Blob storage", 404, f"No object at '{pathname}'.")
        data = path.read_bytes()
        return BlobContent(data=data, etag=hashlib.sha256(data).hexdigest())

    def list(self, prefix: str, limit: int = LIST_LIMIT, cursor: str | None = None) -> ListPage:
        names: list[str] = []
        if self.root.exists():
            for path in self.root.rglob("*"):
                if not path.is_file() or path.name.endswith((LOCK_SUFFIX, _TMP_SUFFIX)):
                    continue
                name = path.relative_to(self.root).as_posix()
                if name.startswith(prefix):
                    names.append(name)
        names.sort()
        start = int(cursor) if cursor else 0
        chunk = names[start : start + limit]
        nxt = start + limit
        return ListPage(
            items=[BlobObject(url=self.url_for(n), pathname=n) for n in chunk],
            cursor=str(nxt) if nxt < len(names) else None,
        )

    def delete(self, urls: list[str]) -> None:
        for url in urls:
            pathname = self._pathname_for(url)
            if pathname is None:
                logger.warning("DELETE skipped, not served by this store: %s", url)
                continue
            self._file(pathname).unlink(missing_ok=True)
        logger.debug("DELETE %d objects", len(urls))

    def probe(self, url: str) -> Existence:
        pathname = self._pathname_for(url)
        if pathname is None:
            return Existence.UNKNOWN
        try:
            return Existence.EXISTS if self._file(pathname).is_file() else Existence.MISSING
        except (OSError, UpstreamFetchError):
            return Existence.UNKNOWN


# ---------------------------------------------------------------------------
# REST backend
# ---------------------------------------------------------------------------


class HttpBlobStore(BlobStore):
    """Blob store reached over a REST API with a bearer token."""

    service = "Blob storage"

    def __init__(
        self,
        api_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        probe_timeout: float = PROBE_TIMEOUT,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _fail(self, resp: httpx.Response) -> UpstreamFetchError:
        return UpstreamFetchError(self.service, resp.status_code, error_text(resp))

    def _body(self, resp: httpx.Response, what: str) -> dict:
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamFetchError(self.service, resp.status_code, f"{what} reply is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise UpstreamFetchError(self.service, resp.status_code, f"{what} reply is not a JSON object.")
        return body

    def put(
        self,
        pathname: str,
        data: bytes,
        content_type: str,
        *,
        add_random_suffix: bool = False,
        if_match: str | None = None,
    ) -> BlobObject:
        headers = {
            **self._auth(),
            "x-content-type": content_type,
            "x-add-random-suffix": "1" if add_random_suffix else "0",
            "x-allow-overwrite": "1",
        }
        if if_match is not None:
            headers["If-Match"] = if_match
        try:
            resp = httpx.put(
                f"{self.api_url}/{pathname}", content=data, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if resp.status_code == 412:
            raise ConflictError(pathname)
        if not resp.is_success:
            raise self._fail(resp)
        body = self._body(resp, "Upload")
        if not isinstance(body.get("url"), str):
            raise UpstreamFetchError(self.service, resp.status_code, "Upload reply has no url.")
        logger.debug("PUT %s (%d bytes, %s)", pathname, len(data), content_type)
        return BlobObject(url=str(body["url"]), pathname=str(body.get("pathname") or pathname))

    def get(self, url: str) -> BlobContent:
        try:
            resp = get_fresh(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success:
            raise self._fail(resp)
        return BlobContent(
            data=resp.content,
            etag=resp.headers.get("etag"),
            content_type=resp.headers.get("content-type", ""),
        )

    def list(self, prefix: str, limit: int = LIST_LIMIT, cursor: str | None = None) -> ListPage:
        params: dict[str, str | int] = {"prefix": prefix, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        try:
            resp = httpx.get(
                self.api_url,
                params=params,
                headers={**self._auth(), **NO_CACHE_HEADERS},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success:
            raise self._fail(resp)
        body = self._body(resp, "List")
        items = [
            BlobObject(url=str(b["url"]), pathname=str(b.get("pathname") or ""))
            for b in body.get("blobs", [])
            if isinstance(b, dict) and isinstance(b.get("url"), str)
        ]
        nxt = body.get("cursor")
        if body.get("hasMore") is False or not isinstance(nxt, str) or not nxt:
            nxt = None
        return ListPage(items=items, cursor=nxt)

    def delete(self, urls: list[str]) -> None:
        if not urls:
            return
        try:
            resp = httpx.post(
                f"{self.api_url}/delete",
                json={"urls": urls},
                headers=self._auth(),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(self.service, 0, str(e)) from e
        if not resp.is_success and resp.status_code != 404:
            raise self._fail(resp)
        logger.debug("DELETE %d objects", len(urls))

    def probe(self, url: str) -> Existence:
        try:
            resp = get_fresh(url, timeout=self.probe_timeout)
        except httpx.HTTPError as e:
            logger.warning("Probe failed for %s: %s", url, e)
            return Existence.UNKNOWN
        return classify_status(resp.status_code)
