"""Project configuration (``.leyline``) and environment overrides."""

import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    CONFIG_FILE,
    DEFAULT_CACHE_THRESHOLD,
    DEFAULT_DOCS_PATH,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_FETCH_WORKERS,
    DEFAULT_REPOSITORY,
)
from .errors import ConfigError
from .fetchers import CATEGORY_NAME
from .local_cache import EvictionPolicy

logger = logging.getLogger(__name__)

ENV_CACHE_DIR = "LEYLINE_CACHE_DIR"
ENV_CACHE_THRESHOLD = "LEYLINE_CACHE_THRESHOLD"
ENV_STRUCTURED_LOGGING = "LEYLINE_STRUCTURED_LOGGING"
ENV_FETCH_WORKERS = "LEYLINE_FETCH_WORKERS"
ENV_FETCH_TIMEOUT = "LEYLINE_FETCH_TIMEOUT"
ENV_REPOSITORY = "LEYLINE_REPOSITORY"


class CacheSettings(BaseModel):
    """``cache:`` section of ``.leyline``. Unset bounds disable eviction."""

    model_config = ConfigDict(extra="forbid")

    max_bytes: Optional[int] = Field(default=None, ge=0)
    max_age_hours: Optional[float] = Field(default=None, gt=0)
    eviction_interval_minutes: Optional[float] = Field(default=None, ge=0)

    def policy(self) -> EvictionPolicy:
        return EvictionPolicy(
            max_bytes=self.max_bytes,
            max_age_seconds=self.max_age_hours * 3600 if self.max_age_hours is not None else None,
            interval_seconds=(self.eviction_interval_minutes * 60
                              if self.eviction_interval_minutes is not None else None),
        )


class LeylineFile(BaseModel):
    """Contents of a project's ``.leyline`` file."""

    model_config = ConfigDict(extra="forbid")

    categories: List[str] = Field(default_factory=list)
    version: Optional[str] = None
    docs_path: str = DEFAULT_DOCS_PATH
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("categories")
    @classmethod
    def _check_categories(cls, v: List[str]) -> List[str]:
        names = []
        for name in v:
            name = name.strip().lower()
            if not name:
                raise ValueError("categories must be non-empty strings")
            if not CATEGORY_NAME.match(name):
                raise ValueError(f"Invalid category name: {name!r}")
            if name not in names:
                names.append(name)
        return names

    @field_validator("version")
    @classmethod
    def _check_version(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (not v.strip() or " " in v.strip()):
            raise ValueError(f"Invalid version reference: {v!r}")
        return v.strip() if v else v

    @field_validator("docs_path")
    @classmethod
    def _check_docs_path(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("docs_path must not be empty")
        return v


class SyncConfig(BaseModel):
    """Effective configuration: ``.leyline`` contents plus environment overrides."""

    project_root: Path
    categories: List[str] = Field(default_factory=list)
    reference: Optional[str] = None
    docs_path: str = DEFAULT_DOCS_PATH
    cache: CacheSettings = Field(default_factory=CacheSettings)
    cache_dir: Optional[Path] = None
    cache_threshold: float = Field(default=DEFAULT_CACHE_THRESHOLD, ge=0.0, le=1.0)
    structured_logging: bool = False
    fetch_workers: int = Field(default=DEFAULT_FETCH_WORKERS, ge=1)
    fetch_timeout: float = Field(default=DEFAULT_FETCH_TIMEOUT, gt=0)
    repository: str = DEFAULT_REPOSITORY

    @property
    def target_dir(self) -> Path:
        return self.project_root / self.docs_path


def load_leyline_file(project_root: Path) -> Optional[LeylineFile]:
    """
    Load ``.leyline`` from ``project_root``; None if there is none.

    Raises:
        ConfigError: If the file is not valid YAML or has invalid/unknown keys
    """
    cfg_path = Path(project_root) / CONFIG_FILE
    if not cfg_path.exists():
        return None

    try:
        data = yaml.safe_load(cfg_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML syntax error in {cfg_path}: {e}") from e

    if data is None:
        return LeylineFile()
    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path}: configuration must be a YAML mapping")

    try:
        return LeylineFile(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {cfg_path}:\n{e}") from e


def parse_cache_threshold(raw: Optional[str]) -> float:
    """Parse a threshold in [0.0, 1.0]; anything else falls back to the default."""
    if raw is None or not raw.strip():
        return DEFAULT_CACHE_THRESHOLD
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %.1f", ENV_CACHE_THRESHOLD, raw, DEFAULT_CACHE_THRESHOLD)
        return DEFAULT_CACHE_THRESHOLD
    if not 0.0 <= value <= 1.0:
        logger.warning("%s=%r out of range [0.0, 1.0]; using %.1f",
                       ENV_CACHE_THRESHOLD, raw, DEFAULT_CACHE_THRESHOLD)
        return DEFAULT_CACHE_THRESHOLD
    return value


def _env_flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def _env_number(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive; using %s", name, default)
        return default
    return value


def load_config(project_root: Path, environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """
    Build the effective configuration for ``project_root``.

    Raises:
        ConfigError: If ``.leyline`` is invalid
    """
    env = os.environ if environ is None else environ
    project_root = Path(project_root)
    leyline = load_leyline_file(project_root) or LeylineFile()

    cache_dir = env.get(ENV_CACHE_DIR)
    return SyncConfig(
        project_root=project_root,
        categories=leyline.categories,
        reference=leyline.version,
        docs_path=leyline.docs_path,
        cache=leyline.cache,
        cache_dir=Path(cache_dir).expanduser() if cache_dir else None,
        cache_threshold=parse_cache_threshold(env.get(ENV_CACHE_THRESHOLD)),
        structured_logging=_env_flag(env.get(ENV_STRUCTURED_LOGGING)),
        fetch_workers=_env_number(env, ENV_FETCH_WORKERS, int, DEFAULT_FETCH_WORKERS),
        fetch_timeout=_env_number(env, ENV_FETCH_TIMEOUT, float, DEFAULT_FETCH_TIMEOUT),
        repository=env.get(ENV_REPOSITORY) or DEFAULT_REPOSITORY,
    )
