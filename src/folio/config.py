"""Folio configuration: loads and validates folio.yaml.

The file is found through the ``FOLIO_CONFIG`` environment variable, or
``./folio.yaml`` otherwise. A missing file means defaults everywhere.
Secrets never live in the file: it only names the environment variables
that hold them.

If no config exists, create_default() writes a commented starter file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from folio.blobstore import BlobStore, HttpBlobStore, LocalBlobStore
from folio.errors import ConfigError, ServiceNotConfigured
from folio.manifest import ManifestStore


@dataclass
class StorageConfig:
    backend: str = "local"  # local | http
    root: str = "./blob"
    public_base_url: str = "http://localhost:8000/blob"
    api_url: str = ""
    token_env: str = "BLOB_READ_WRITE_TOKEN"


@dataclass
class ManifestConfig:
    conditional_writes: bool = False
    debug_log_max: int = 50


@dataclass
class PruneConfig:
    probe_timeout: float = 10.0
    probe_workers: int = 1


@dataclass
class DocAiConfig:
    endpoint: str = ""
    token_env: str = "DOCAI_ACCESS_TOKEN"


@dataclass
class GeminiConfig:
    model: str = "gemini-2.0-flash"
    api_key_env: str = "GEMINI_API_KEY"


@dataclass
class OpenAIConfig:
    model: str = "gpt-4.1-mini"
    api_key_env: str = "OPENAI_API_KEY"


@dataclass
class RasterConfig:
    zoom: float = 2.0


@dataclass
class FolioConfig:
    """Parsed folio.yaml."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    manifest: ManifestConfig = field(default_factory=ManifestConfig)
    prune: PruneConfig = field(default_factory=PruneConfig)
    docai: DocAiConfig = field(default_factory=DocAiConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    raster: RasterConfig = field(default_factory=RasterConfig)
    path: Path | None = None  # file it was loaded from, if any


_DEFAULT_CONFIG = """\
# Folio configuration
# Secrets are never stored here: each service names the environment
# variable that holds its token or key.

storage:
  # local: objects under `root`, served from `public_base_url`
  # http:  a REST blob service at `api_url`, bearer token from `token_env`
  backend: local
  root: ./blob
  public_base_url: http://localhost:8000/blob
  api_url: ""
  token_env: BLOB_READ_WRITE_TOKEN

manifest:
  # true: a save fails with a conflict if someone else saved since our read.
  # false: last writer wins (deleted assets still never come back).
  conditional_writes: false
  debug_log_max: 50

prune:
  probe_timeout: 10.0   # seconds per existence check
  probe_workers: 1      # >1 checks assets in parallel

docai:
  # Full :process URL of a Document AI processor, e.g.
  # https://eu-documentai.googleapis.com/v1/projects/P/locations/eu/processors/ID:process
  endpoint: ""
  token_env: DOCAI_ACCESS_TOKEN

gemini:
  model: gemini-2.0-flash
  api_key_env: GEMINI_API_KEY

openai:
  model: gpt-4.1-mini
  api_key_env: OPENAI_API_KEY

raster:
  zoom: 2.0             # 2.0 = 144 dpi page PNGs
"""

_SECTIONS = {
    "storage": StorageConfig,
    "manifest": ManifestConfig,
    "prune": PruneConfig,
    "docai": DocAiConfig,
    "gemini": GeminiConfig,
    "openai": OpenAIConfig,
    "raster": RasterConfig,
}


def config_path() -> Path:
    """Where folio.yaml is looked for: FOLIO_CONFIG, else ./folio.yaml."""
    return Path(os.environ.get("FOLIO_CONFIG") or "folio.yaml")


def create_default(path: Path | None = None) -> Path:
    """Write a starter folio.yaml if it doesn't exist. Returns the path."""
    p = path or config_path()
    if not p.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(_DEFAULT_CONFIG, encoding="utf-8")
    return p


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    where = f"{section}.{key}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where} must be true or false, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where} must be a number, got {value!r}")
        return float(value)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{where} must be a string, got {value!r}")
    return value


def _section(name: str, data: Any) -> Any:
    cls = _SECTIONS[name]
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(data).__name__}")
    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(
            f"unknown key(s) in '{name}': {', '.join(map(str, unknown))}",
            hint=f"Valid keys: {', '.join(sorted(known))}.",
        )
    values = {k: _coerce(name, k, v, getattr(defaults, k)) for k, v in data.items()}
    return cls(**values)


def _apply_env(cfg: FolioConfig) -> None:
    if os.environ.get("FOLIO_BLOB_ROOT"):
        cfg.storage.root = os.environ["FOLIO_BLOB_ROOT"]
    if os.environ.get("FOLIO_GEMINI_MODEL"):
        cfg.gemini.model = os.environ["FOLIO_GEMINI_MODEL"]
    if os.environ.get("FOLIO_OPENAI_MODEL"):
        cfg.openai.model = os.environ["FOLIO_OPENAI_MODEL"]


def load_config(path: Path | None = None) -> FolioConfig:
    """Load and validate folio.yaml. Returns defaults if the file is missing."""
    p = path or config_path()
    if not p.exists():
        cfg = FolioConfig()
        _apply_env(cfg)
        return cfg

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"expected a YAML mapping in {p}, got {type(data).__name__}")

    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ConfigError(
            f"unknown section(s) in {p}: {', '.join(map(str, unknown))}",
            hint=f"Valid sections: {', '.join(_SECTIONS)}.",
        )
    cfg = FolioConfig(**{name: _section(name, data.get(name)) for name in _SECTIONS}, path=p)
    if cfg.storage.backend not in ("local", "http"):
        raise ConfigError(f"storage.backend must be 'local' or 'http', got '{cfg.storage.backend}'")
    if cfg.prune.probe_workers < 1:
        raise ConfigError("prune.probe_workers must be at least 1")
    if cfg.manifest.debug_log_max < 1:
        raise ConfigError("manifest.debug_log_max must be at least 1")
    if cfg.raster.zoom <= 0:
        raise ConfigError("raster.zoom must be positive")
    _apply_env(cfg)
    return cfg


def secret(env_var: str, service: str) -> str:
    """Read a credential from the environment, or explain how to provide it."""
    value = os.environ.get(env_var, "").strip()
    if not value:
        raise ServiceNotConfigured(service, env_var)
    return value


def build_blob_store(cfg: FolioConfig) -> BlobStore:
    s = cfg.storage
    if s.backend == "http":
        if not s.api_url:
            raise ConfigError("storage.api_url is required for the http backend")
        return HttpBlobStore(
            s.api_url,
            secret(s.token_env, "Blob storage"),
            probe_timeout=cfg.prune.probe_timeout,
        )
    return LocalBlobStore(Path(s.root), s.public_base_url)


def build_manifest_store(cfg: FolioConfig, blobs: BlobStore) -> ManifestStore:
    return ManifestStore(
        blobs,
        conditional=cfg.manifest.conditional_writes,
        debug_log_max=cfg.manifest.debug_log_max,
    )
