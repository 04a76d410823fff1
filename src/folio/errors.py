"""Exception hierarchy for Folio.

Every error message includes: what happened, why, and what to do next.
Callers (MCP clients, scripts) surface the message as-is in ``{"ok": false,
"error": ...}`` replies, so it has to stand on its own.
"""


class FolioError(Exception):
    """Base class for all Folio errors."""


class ValidationError(FolioError):
    """Request fields are missing or malformed. Nothing was changed."""

    def __init__(self, detail: str):
        super().__init__(f"Invalid request: {detail}. The manifest was not modified.")
        self.detail = detail


class MismatchError(FolioError):
    """The manifest at the given address belongs to a different project."""

    def __init__(self, expected: str, actual: str, when: str = ""):
        where = f" {when}" if when else ""
        super().__init__(
            f"projectId does not match manifest{where}: expected '{expected}', "
            f"manifest says '{actual}'. "
            f"Check that manifest_url is the latest address returned for this project."
        )
        self.expected = expected
        self.actual = actual


class NotFoundError(FolioError):
    """A page, asset or derived artifact the operation needs is absent."""

    def __init__(self, what: str, hint: str = ""):
        msg = f"{what} not found"
        if hint:
            msg += f". {hint}"
        super().__init__(msg)
        self.what = what
        self.hint = hint


class UpstreamFetchError(FolioError):
    """A collaborator (blob storage, document AI, generative model) failed.

    ``status_code`` is 0 when the service could not be reached at all.
    Blob and manifest I/O is never retried; the caller decides whether to
    try again. Only the AI client adapters back off on 429 and 5xx.
    """

    def __init__(self, service: str, status_code: int, detail: str = ""):
        if status_code == 0:
            msg = f"{service} unreachable. Check the network or endpoint configuration."
        elif status_code == 404:
            msg = f"{service} returned HTTP 404 (not found)."
        elif status_code == 429:
            msg = f"{service} rate-limited (HTTP 429). Wait a moment and try again."
        elif status_code >= 500:
            msg = (
                f"{service} server error (HTTP {status_code}). "
                f"The service may be temporarily down. Try again later."
            )
        else:
            msg = f"{service} returned HTTP {status_code}."
        if detail:
            msg += f" {detail}"
        super().__init__(msg.strip())
        self.service = service
        self.status_code = status_code
        self.detail = detail


class ConflictError(FolioError):
    """A conditional manifest write found a newer version already stored."""

    def __init__(self, path: str):
        super().__init__(
            f"Conditional write to '{path}' rejected: the object changed since it was read. "
            f"Re-read the manifest and repeat the operation."
        )
        self.path = path


class ConfigError(FolioError):
    """Folio configuration is missing or invalid."""

    def __init__(self, detail: str, hint: str = ""):
        msg = f"Configuration error: {detail}."
        if hint:
            msg += f" {hint}"
        super().__init__(msg)
        self.detail = detail
        self.hint = hint


class ServiceNotConfigured(ConfigError):
    """An external AI service was requested but has no credentials."""

    def __init__(self, service: str, env_var: str):
        super().__init__(
            f"{service} is not configured",
            hint=f"Set the {env_var} environment variable, or change its name in folio.yaml.",
        )
        self.service = service
        self.env_var = env_var
