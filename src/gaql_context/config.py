"""
Retrieval configuration.

Loads settings from environment variables (the CLI loads .env first).
Library objects take a RetrievalConfig explicitly; get_config() exists for
process entry points only.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from gaql_context.retrieval.distance import DistanceMetric

DEFAULT_CACHE_DIR = "~/.cache/gaql-context"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(name)
    return Path(raw).expanduser() if raw else None


@dataclass
class RetrievalConfig:
    """Configuration for the embedding cache and retrieval service.

    Environment Variables:
        GAQL_CONTEXT_CACHE_DIR: Snapshot root (default: ~/.cache/gaql-context)
        GAQL_CONTEXT_EMBEDDING_PROVIDER: "openai" or "mock" (default: openai)
        GAQL_CONTEXT_EMBEDDING_MODEL: Model name (default: text-embedding-3-small)
        GAQL_CONTEXT_EMBEDDING_BASE_URL: OpenAI-compatible endpoint (optional)
        GAQL_CONTEXT_EMBEDDING_DIMENSIONS: Requested output dimensions (optional)
        GAQL_CONTEXT_DISTANCE_METRIC: cosine, dot or l2 (default: cosine)
        GAQL_CONTEXT_MIN_SCORE: Drop results scoring below this (default: 0.0)
        GAQL_CONTEXT_MAX_RESULTS: Default result count (default: 10)
        GAQL_CONTEXT_MIN_ANN_SIZE: Collection size for graph search (default: 256)
        GAQL_CONTEXT_BATCH_SIZE: Texts per embedding request (default: 64)
        GAQL_CONTEXT_MAX_CONCURRENCY: Concurrent embedding requests (default: 4)
        GAQL_CONTEXT_EMBED_TIMEOUT: Seconds per embedding request (default: 60)
        GAQL_CONTEXT_COOKBOOK_PATH: Query cookbook TOML (optional)
        GAQL_CONTEXT_FIELD_CACHE_PATH: Field metadata JSON (optional)
        GAQL_CONTEXT_FIELD_CACHE_MAX_AGE_DAYS: Field metadata TTL (default: 30)
    """

    cache_dir: Path = Path(DEFAULT_CACHE_DIR).expanduser()
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str | None = None
    embedding_dimensions: int | None = None
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    min_score: float = 0.0
    default_max_results: int = 10
    min_ann_size: int = 256
    batch_size: int = 64
    max_concurrency: int = 4
    embed_timeout: float = 60.0
    cookbook_path: Path | None = None
    field_cache_path: Path | None = None
    field_cache_max_age_days: int = 30

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        """Load config from environment variables."""
        dimensions = _env_int("GAQL_CONTEXT_EMBEDDING_DIMENSIONS", 0)
        return cls(
            cache_dir=Path(os.environ.get("GAQL_CONTEXT_CACHE_DIR") or DEFAULT_CACHE_DIR).expanduser(),
            embedding_provider=os.environ.get("GAQL_CONTEXT_EMBEDDING_PROVIDER", "openai").lower(),
            embedding_model=os.environ.get("GAQL_CONTEXT_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_base_url=os.environ.get("GAQL_CONTEXT_EMBEDDING_BASE_URL") or None,
            embedding_dimensions=dimensions or None,
            distance_metric=DistanceMetric.parse(os.environ.get("GAQL_CONTEXT_DISTANCE_METRIC", "cosine")),
            min_score=_env_float("GAQL_CONTEXT_MIN_SCORE", 0.0),
            default_max_results=_env_int("GAQL_CONTEXT_MAX_RESULTS", 10),
            min_ann_size=_env_int("GAQL_CONTEXT_MIN_ANN_SIZE", 256),
            batch_size=_env_int("GAQL_CONTEXT_BATCH_SIZE", 64),
            max_concurrency=_env_int("GAQL_CONTEXT_MAX_CONCURRENCY", 4),
            embed_timeout=_env_float("GAQL_CONTEXT_EMBED_TIMEOUT", 60.0),
            cookbook_path=_env_path("GAQL_CONTEXT_COOKBOOK_PATH"),
            field_cache_path=_env_path("GAQL_CONTEXT_FIELD_CACHE_PATH"),
            field_cache_max_age_days=_env_int("GAQL_CONTEXT_FIELD_CACHE_MAX_AGE_DAYS", 30),
        )


_config: RetrievalConfig | None = None


def get_config() -> RetrievalConfig:
    """Get the process-wide config (lazy-loaded from env)."""
    global _config
    if _config is None:
        _config = RetrievalConfig.from_env()
    return _config


def reset_config() -> None:
    """Reset config (useful for testing)."""
    global _config
    _config = None
