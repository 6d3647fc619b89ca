from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import BuildKind, ConfigMetadata

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"
ENV_PREFIX = "BOOKBREW__"

# Flat option names of the public configuration surface and where they live.
FLAT_OPTIONS: Dict[str, str] = {
    "max_concurrent_renders": "scheduler.max_concurrent_renders",
    "max_queue_length": "scheduler.max_queue_length",
    "max_retries": "scheduler.max_retries",
    "render_timeout_seconds": "scheduler.render_timeout_seconds",
    "cache_ttl_seconds": "cache.ttl_seconds",
    "cleanup_interval_seconds": "scheduler.cleanup_interval_seconds",
}

NOTES = {
    "scheduler.max_concurrent_renders": "Number of renders running at once; null uses the CPU count.",
    "scheduler.max_queue_length": "Submissions beyond this many queued builds are rejected with queue_saturated.",
    "scheduler.retry_backoff_seconds": "Base delay before a transient failure is retried; doubles per attempt.",
    "cache.ttl_seconds": "Finished PDFs are reused for identical requests within this window.",
    "scheduler.cleanup_interval_seconds": "Expired handles, jobs and artifacts are swept this often; 0 disables it.",
    "renderer.uploads_dir": "Uploaded images copied into the workspace when Markdown or metadata reference them.",
    "storage.ledger_path": "SQLite job history; null disables it.",
    "s3.bucket": "When set, finished PDFs can be published to S3 and fetched through presigned URLs.",
}


@dataclass
class SchedulerSettings:
    max_concurrent_renders: Optional[int] = None
    max_queue_length: int = 64
    max_retries: int = 1
    retry_backoff_seconds: float = 2.0
    render_timeout_seconds: float = 300.0
    job_retention_seconds: float = 3600.0
    cleanup_interval_seconds: float = 300.0

    @property
    def worker_count(self) -> int:
        return self.max_concurrent_renders or os.cpu_count() or 1


@dataclass
class CacheSettings:
    ttl_seconds: float = 3600.0
    max_entries: int = 256
    max_bytes: Optional[int] = None


@dataclass
class StorageSettings:
    artifact_root: str = "data/artifacts"
    ledger_path: Optional[str] = "data/jobs.db"


@dataclass
class RendererSettings:
    typeset_dir: str = "typeset"
    user_templates_dir: str = "user_templates"
    pandoc_binary: str = "pandoc"
    xelatex_binary: str = "xelatex"
    pdflatex_binary: str = "pdflatex"
    pdftk_binary: str = "pdftk"
    obsidian_export_binary: str = "obsidian-export"
    uploads_dir: str = "uploads"
    latex_passes: int = 2
    min_output_bytes: int = 1024


@dataclass
class S3Settings:
    bucket: str = ""
    prefix: str = "builds"
    presign_expiration: int = 3600


@dataclass
class ApiSettings:
    fetch_timeout_ms: int = 300000
    fetch_poll_ms: int = 200
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingSettings:
    level: str = "INFO"


@dataclass
class Settings:
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    renderer: RendererSettings = field(default_factory=RendererSettings)
    s3: S3Settings = field(default_factory=S3Settings)
    api: ApiSettings = field(default_factory=ApiSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _base_config() -> DictConfig:
    base = OmegaConf.structured(Settings)
    merged = OmegaConf.merge(base, _load_default_config())
    OmegaConf.set_struct(merged, True)
    return merged


def env_overrides(environ: Mapping[str, str] | None = None) -> List[str]:
    """
    Translate ``BOOKBREW__SECTION__KEY=value`` variables into OmegaConf dotlist entries.

    Example:
        >>> env_overrides({"BOOKBREW__CACHE__TTL_SECONDS": "60"})
        ['cache.ttl_seconds=60']
    """
    environ = os.environ if environ is None else environ
    dotlist = []
    for name, value in sorted(environ.items()):
        if not name.startswith(ENV_PREFIX):
            continue
        path = ".".join(part.lower() for part in name[len(ENV_PREFIX):].split("__") if part)
        if path:
            dotlist.append(f"{path}={value}")
    return dotlist


def _expand_flat_options(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    nested: Dict[str, Any] = {}
    for key, value in overrides.items():
        path = FLAT_OPTIONS.get(key, key)
        if "." not in path:
            if isinstance(value, Mapping):
                nested.setdefault(path, {}).update(value)
            else:
                nested[path] = value
            continue
        section, option = path.split(".", 1)
        nested.setdefault(section, {})[option] = value
    return nested


def make_runtime_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> DictConfig:
    """
    Merge defaults, environment variables and explicit overrides (in that order).

    ``overrides`` may be nested (``{"cache": {"ttl_seconds": 60}}``), dotted
    (``{"cache.ttl_seconds": 60}``) or use the flat option names such as
    ``max_retries``. Unknown keys raise an OmegaConf error.
    """
    base = _base_config()
    env_config = OmegaConf.from_dotlist(env_overrides(environ))
    explicit = OmegaConf.create(_expand_flat_options(overrides or {}))
    return DictConfig(OmegaConf.merge(base, env_config, explicit))


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Build the typed settings object passed to every component constructor.

    Raises:
        TypeError: The merged configuration did not convert to ``Settings``
    """
    settings = OmegaConf.to_object(make_runtime_config(overrides, environ))
    if not isinstance(settings, Settings):
        raise TypeError(f"Configuration resolved to {type(settings).__name__}, expected Settings")
    return settings


def get_default_config_container(resolve: bool = True) -> Dict[str, Any]:
    return OmegaConf.to_container(_base_config(), resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def build_config_metadata() -> ConfigMetadata:
    from .templates import METADATA_DEFAULTS

    return ConfigMetadata(
        defaults=get_default_config_container(),
        build_kinds=[kind.value for kind in BuildKind],
        metadata_fields=list(METADATA_DEFAULTS),
        notes=NOTES,
    )
