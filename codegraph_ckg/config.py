"""Configuration paths and tunables for the code knowledge graph engine.

Settings are read from ``$CKG_HOME/config.toml`` (default
``~/.codegraph-ckg/config.toml``).  Every section is optional; missing keys
fall back to the defaults documented on each dataclass.

Example::

    [indexer]
    batch_size = 100
    batch_interval = 2.0

    [context]
    max_tokens = 4000

    [context.weights]
    exact_match = 0.45
    semantic = 0.35

    [embeddings]
    model = "hash"

    [languages]
    enabled = ["python", "javascript", "typescript"]
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("CKG_HOME", str(Path.home() / ".codegraph-ckg"))).expanduser()
DATA_DIR = BASE_DIR / "data"
CONFIG_FILE = BASE_DIR / "config.toml"
DEFAULT_EMBEDDING_DIM = 256


@dataclass
class StoreSettings:
    """SQLite / LanceDB connection settings."""

    # Seconds SQLite waits on a locked database before raising.
    busy_timeout: float = 5.0
    # Default and hard cap for Neighbors() traversal depth.
    max_depth: int = 3
    retry_attempts: int = 3
    retry_base_delay: float = 0.2


@dataclass
class IndexerSettings:
    batch_size: int = 100
    batch_interval: float = 2.0
    # 0 means os.cpu_count()
    pool_size: int = 0
    queue_size: int = 10000
    enqueue_timeout: float = 0.5
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    max_chunk_tokens: int = 512
    max_file_bytes: int = 1_000_000

    def workers(self) -> int:
        return self.pool_size or (os.cpu_count() or 1)


@dataclass
class RerankWeights:
    """Weights of the reranking score terms.

    Defaults are part of the public contract and stay stable across
    releases: exact match 0.45, semantic 0.35, recency 0.10, proximity 0.10.
    """

    exact_match: float = 0.45
    semantic: float = 0.35
    recency: float = 0.10
    proximity: float = 0.10


@dataclass
class ContextSettings:
    max_tokens: int = 4000
    min_score: float = 0.7
    semantic_limit: int = 20
    text_limit: int = 20
    reference_limit: int = 10
    callers_per_chunk: int = 3
    weights: RerankWeights = field(default_factory=RerankWeights)


@dataclass
class EmbeddingSettings:
    model: str = "hash"
    timeout: float = 10.0
    endpoint: str = ""
    api_key: str = ""
    remote_model: str = "text-embedding-3-small"
    batch_size: int = 16


@dataclass
class Settings:
    store: StoreSettings = field(default_factory=StoreSettings)
    indexer: IndexerSettings = field(default_factory=IndexerSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    embeddings: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    languages: List[str] = field(
        default_factory=lambda: ["python", "javascript", "typescript", "tsx"]
    )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["languages"] = {"enabled": list(self.languages)}
        return payload


def _apply_section(target: Any, values: Dict[str, Any], section: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown config key [%s] %s", section, key)
            continue
        current = getattr(target, key)
        if isinstance(value, dict) and hasattr(current, "__dataclass_fields__"):
            _apply_section(current, value, f"{section}.{key}")
        else:
            setattr(target, key, value)


def settings_from_dict(payload: Dict[str, Any]) -> Settings:
    """Build :class:`Settings` from a parsed TOML document."""
    settings = Settings()
    for section in ("store", "indexer", "context", "embeddings"):
        values = payload.get(section)
        if isinstance(values, dict):
            _apply_section(getattr(settings, section), values, section)
    languages = payload.get("languages", {})
    if isinstance(languages, dict) and "enabled" in languages:
        settings.languages = [str(lang) for lang in languages["enabled"]]
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from TOML, falling back to defaults.

    A malformed file is reported and ignored rather than aborting startup.
    """
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return Settings()
    try:
        payload = toml.load(str(config_path))
    except (toml.TomlDecodeError, OSError) as exc:
        logger.warning("Could not read %s (%s); using defaults.", config_path, exc)
        return Settings()
    return settings_from_dict(payload)


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    config_path = path or CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as fh:
        toml.dump(settings.to_dict(), fh)
    return config_path


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
