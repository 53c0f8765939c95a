"""
Corpus suppliers for the two retrieval collections.

- query_cookbook: named example GAQL queries read from a TOML file
- field_metadata: Google Ads field metadata, cached on disk as JSON

Both produce Document lists in a stable order so the content fingerprint
only changes when the content does.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import BaseModel, Field, ValidationError

from gaql_context.core.errors import NotFound
from gaql_context.retrieval.document import Document
from gaql_context.retrieval.enrichment import DescriptionEnricher, FieldMetadata
from gaql_context.retrieval.metadata import atomic_write_bytes

logger = logging.getLogger(__name__)

QUERY_COOKBOOK = "query_cookbook"
FIELD_METADATA = "field_metadata"

DEFAULT_API_VERSION = "v22"


# ---------------------------------------------------------------------------
# QUERY COOKBOOK
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryEntry:
    """One cookbook example: what it does, and the GAQL that does it."""

    description: str
    query: str


def humanize_key(key: str) -> str:
    """'accounts_with_traffic_last_week' -> 'accounts with traffic last week'"""
    return " ".join(key.replace("-", "_").split("_")).strip()


def _entry_from_value(key: str, value: Any) -> QueryEntry | None:
    if isinstance(value, str):
        return QueryEntry(description=humanize_key(key), query=value.strip())
    if isinstance(value, dict):
        description = str(value.get("description") or "").strip() or humanize_key(key)
        return QueryEntry(description=description, query=str(value.get("query") or "").strip())
    return None


def load_query_cookbook(path: Path | str) -> dict[str, QueryEntry]:
    """
    Load named queries from a TOML cookbook.

    Two entry forms are accepted:

        accounts_with_traffic_last_week = \"\"\"SELECT customer.id ...\"\"\"

        [campaigns_by_cost]
        description = "Campaigns ranked by spend"
        query = "SELECT campaign.name, metrics.cost_micros FROM campaign ..."

    Raises:
        FileNotFoundError: path does not exist
        ValueError: the file is not valid TOML
    """
    path = Path(path).expanduser()
    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Unable to parse query cookbook {path}: {e}") from e

    entries: dict[str, QueryEntry] = {}
    for key, value in raw.items():
        entry = _entry_from_value(key, value)
        if entry is None:
            logger.warning(f"Skipping cookbook entry {key!r}: expected a string or a table")
            continue
        entries[key] = entry

    logger.info(f"{len(entries)} queries loaded from {path}")
    return entries


def cookbook_documents(entries: Mapping[str, QueryEntry]) -> list[Document]:
    """The description is embedded; the query travels as an attribute."""
    return [
        Document(
            id=name,
            text=entry.description,
            attributes={"description": entry.description, "query": entry.query},
        )
        for name, entry in sorted(entries.items())
    ]


# ---------------------------------------------------------------------------
# FIELD METADATA CACHE
# ---------------------------------------------------------------------------


class FieldMetadataCache(BaseModel):
    """Google Ads field metadata as fetched from the API, persisted as JSON."""

    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    api_version: str = DEFAULT_API_VERSION
    fields: dict[str, FieldMetadata] = Field(default_factory=dict)
    resources: dict[str, list[str]] | None = None

    @classmethod
    def load(cls, path: Path | str) -> "FieldMetadataCache":
        path = Path(path).expanduser()
        return cls.model_validate_json(path.read_bytes())

    def save(self, path: Path | str) -> None:
        path = Path(path).expanduser()
        atomic_write_bytes(path, self.model_dump_json(indent=2, exclude_none=True).encode("utf-8"))
        logger.info(f"Saved field metadata cache to {path}")

    def age(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        last_updated = self.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return now - last_updated

    @classmethod
    def load_or_fetch(
        cls,
        path: Path | str,
        max_age_days: int = 30,
        fetcher: Callable[[], "FieldMetadataCache"] | None = None,
    ) -> "FieldMetadataCache":
        """
        Load the cache from disk, refreshing it through fetcher when stale.

        A stale cache is still returned (with a warning) when there is no
        fetcher or the fetch fails. A refreshed cache that cannot be saved is
        returned anyway.

        Raises:
            NotFound: no usable cache on disk and no fetch succeeded
        """
        path = Path(path).expanduser()
        cached: FieldMetadataCache | None = None

        if path.exists():
            try:
                cached = cls.load(path)
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Failed to load field metadata cache from {path}: {e}")
            else:
                age = cached.age()
                if age < timedelta(days=max_age_days):
                    logger.info(f"Loaded field metadata cache from {path} (age: {age.days} days)")
                    return cached
                logger.info(f"Field metadata cache is stale (age: {age.days} days)")

        if fetcher is not None:
            try:
                fresh = fetcher()
            except Exception as e:
                if cached is None:
                    raise NotFound(f"No field metadata cache at {path} and the fetch failed: {e}") from e
                logger.warning(f"Field metadata refresh failed, using stale cache from {path}: {e}")
                return cached
            try:
                fresh.save(path)
            except OSError as e:
                logger.warning(f"Could not save refreshed field metadata to {path}: {e}")
            return fresh

        if cached is not None:
            logger.warning(f"No field metadata fetcher configured; using stale cache from {path}")
            return cached
        raise NotFound(f"No field metadata cache at {path} and no fetcher provided")

    # -- queries -----------------------------------------------------------

    def get_metrics(self, pattern: str | None = None) -> list[FieldMetadata]:
        return [
            f for f in self.all_fields() if f.is_metric() and (pattern is None or pattern in f.name)
        ]

    def get_segments(self, pattern: str | None = None) -> list[FieldMetadata]:
        return [
            f for f in self.all_fields() if f.is_segment() and (pattern is None or pattern in f.name)
        ]

    def get_attributes(self, resource: str) -> list[FieldMetadata]:
        return [f for f in self.all_fields() if f.resource == resource and f.is_attribute()]

    def get_resource_fields(self, resource: str) -> list[FieldMetadata]:
        """Fields selectable with a resource; falls back to the name prefix."""
        if self.resources and resource in self.resources:
            return [self.fields[name] for name in self.resources[resource] if name in self.fields]
        return [f for f in self.all_fields() if f.resource == resource]

    def get_resources(self) -> list[str]:
        if self.resources:
            return sorted(self.resources)
        return sorted({f.resource for f in self.fields.values() if f.resource})

    def find_fields(self, pattern: str) -> list[FieldMetadata]:
        return [f for f in self.all_fields() if pattern in f.name]

    def get_field(self, name: str) -> FieldMetadata | None:
        return self.fields.get(name)

    def all_fields(self) -> list[FieldMetadata]:
        return [self.fields[name] for name in sorted(self.fields)]


def field_documents(
    cache: FieldMetadataCache,
    enricher: DescriptionEnricher | None = None,
) -> list[Document]:
    enricher = enricher or DescriptionEnricher()
    return enricher.to_documents(cache.all_fields())


def field_corpus_salt(cache: FieldMetadataCache, enricher: DescriptionEnricher | None = None) -> str:
    """Fingerprint salt for the field collection: enrichment version + API version."""
    version = (enricher or DescriptionEnricher()).version
    return f"{version}|{cache.api_version}"
