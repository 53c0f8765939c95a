"""
Description enrichment for field metadata documents.

Raw Google Ads field names ("metrics.average_cpc") embed poorly: semantic
queries such as "how much am I paying per click" share no words with them.
DescriptionEnricher turns one FieldMetadata into a multi-section text that
carries the name, category, type, capabilities, inferred purpose and domain.

The output is a pure function of the input. It feeds both the embedding call
and the content fingerprint, so any change to the wording here must bump
DESCRIPTION_VERSION.
"""

from __future__ import annotations

import re
from typing import Iterable

from pydantic import BaseModel, Field

from gaql_context.retrieval.document import Document

# Mixed into the field collection fingerprint; bump when describe() changes.
DESCRIPTION_VERSION = "DESCRIPTION_VERSION_4"

SECTION_SEPARATOR = ". "


class FieldMetadata(BaseModel):
    """Metadata for a single Google Ads field, as served by the fields service."""

    name: str = Field(description="Fully qualified field name, e.g. 'metrics.clicks'")
    category: str = Field(default="UNKNOWN", description="RESOURCE, ATTRIBUTE, SEGMENT or METRIC")
    data_type: str = Field(default="UNKNOWN", description="Google Ads data type, e.g. INT64")
    selectable: bool = False
    filterable: bool = False
    sortable: bool = False
    metrics_compatible: bool = False
    resource_name: str | None = None

    def is_metric(self) -> bool:
        return self.category == "METRIC" or self.name.startswith("metrics.")

    def is_segment(self) -> bool:
        return self.category == "SEGMENT" or self.name.startswith("segments.")

    def is_attribute(self) -> bool:
        return self.category == "ATTRIBUTE"

    def is_resource(self) -> bool:
        return self.category == "RESOURCE"

    @property
    def resource(self) -> str | None:
        """Resource prefix of the field name ("campaign" for "campaign.name")."""
        if "." in self.name:
            return self.name.split(".", 1)[0]
        return self.resource_name or None

    def attributes(self) -> dict:
        """Structured attributes stored alongside the embedding."""
        return {
            "category": self.category,
            "data_type": self.data_type,
            "selectable": self.selectable,
            "filterable": self.filterable,
            "sortable": self.sortable,
            "metrics_compatible": self.metrics_compatible,
            "resource_name": self.resource_name,
        }


# ---------------------------------------------------------------------------
# DESCRIPTION TABLES
# ---------------------------------------------------------------------------

CATEGORY_DESCRIPTIONS = {
    "METRIC": "metric, a quantitative performance measurement aggregated over the selected rows",
    "SEGMENT": "segment, a dimension used to break down and group performance data",
    "ATTRIBUTE": "attribute, a descriptive property of a resource",
    "RESOURCE": "resource, a queryable entity usable in the FROM clause",
}

DATA_TYPE_DESCRIPTIONS = {
    "BOOLEAN": "boolean true or false value",
    "DATE": "calendar date value",
    "DOUBLE": "decimal numeric value",
    "FLOAT": "decimal numeric value",
    "ENUM": "enumerated value from a fixed set of options",
    "INT32": "integer numeric value",
    "INT64": "integer numeric value, amounts in micros",
    "UINT64": "unsigned integer numeric value",
    "MESSAGE": "structured message value",
    "RESOURCE_NAME": "resource name reference to another entity",
    "STRING": "text value",
}

# (patterns, tag). Patterns are substrings of the normalized name, padded
# with one space on each side, so " id " only matches the whole word while
# "bid" also matches "biddable". All matching tags are kept, in order.
PURPOSE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("cost", "cpc", "cpm", "cpv", "cpe", "cpa", "bid", "micros"), "cost and bidding, advertising spend"),
    (("conversion", "roas"), "conversions and sales tracking"),
    (("click", " ctr"), "user clicks, key performance metrics"),
    (("interaction", "engagement"), "engagement, intentional user response to ads"),
    (("impression share",), "share of eligible ad views, competitive visibility"),
    (("impression",), "ad views, reach and visibility"),
    (("video view", "video quartile", "view rate"), "video views and watch progress"),
    (("budget",), "budget management and pacing"),
    (("date", "time", "week", "month", "quarter", "year", "hour"), "temporal analysis, trends over time"),
    (("location", "geo", "country", "city", "region"), "geographic analysis"),
    (("device",), "device specific analysis"),
    (("audience", "demographic", "age range", "gender", "user list"), "audience targeting and analysis"),
    (("asset", "creative", "headline", "description", "image", "final url"), "creative assets and ad copy"),
    (("status",), "entity status, enabled paused or removed"),
    (("name", " id "), "identity, naming and identifying entities"),
    (("search term", "keyword", "query"), "search query and keyword analysis"),
    (("quality",), "quality and relevance diagnostics"),
)

DOMAIN_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("campaign",), "campaign management"),
    (("ad group",), "ad group management"),
    (("search", "keyword"), "search advertising"),
    (("video", "youtube"), "video advertising"),
    (("shopping", "product", "merchant"), "shopping advertising"),
    (("display", "placement", "topic"), "display advertising"),
    ((" app ", " app install", " app campaign"), "app promotion"),
    (("customer", "account"), "account level"),
    (("label",), "labels and organization"),
    (("billing", "invoice", "account budget"), "billing"),
    (("conversion action", "conversion tracking"), "conversion tracking setup"),
    (("experiment",), "experiments and drafts"),
)

_NORMALIZE_RE = re.compile(r"[._]+")


def normalize_name(name: str) -> str:
    """'metrics.average_cpc' -> 'metrics average cpc'."""
    return " ".join(_NORMALIZE_RE.sub(" ", name.lower()).split())


def _match_tags(text: str, rules) -> list[str]:
    padded = f" {text} "
    tags: list[str] = []
    for patterns, tag in rules:
        if any(pattern in padded for pattern in patterns) and tag not in tags:
            tags.append(tag)
    return tags


class DescriptionEnricher:
    """Synthesizes the embedded text for field metadata documents."""

    version = DESCRIPTION_VERSION

    def describe(self, field: FieldMetadata) -> str:
        name = normalize_name(field.name)
        sections = [
            f"{name} {name}",
            CATEGORY_DESCRIPTIONS.get(field.category, f"{field.category.lower()} field"),
            DATA_TYPE_DESCRIPTIONS.get(field.data_type, f"{field.data_type.lower()} value"),
        ]

        capabilities = [
            flag
            for flag, enabled in (
                ("selectable", field.selectable),
                ("filterable", field.filterable),
                ("sortable", field.sortable),
                ("metrics compatible", field.metrics_compatible),
            )
            if enabled
        ]
        if capabilities:
            sections.append("capabilities: " + " ".join(capabilities))

        purposes = self.infer_purpose(name)
        if purposes:
            sections.append("purpose: " + "; ".join(purposes))

        context = name
        if field.resource_name:
            context = f"{name} {normalize_name(field.resource_name)}"
        domains = self.infer_domain(context)
        if domains:
            sections.append("domain: " + "; ".join(domains))

        return SECTION_SEPARATOR.join(sections)

    @staticmethod
    def infer_purpose(normalized_name: str) -> list[str]:
        return _match_tags(normalized_name, PURPOSE_RULES)

    @staticmethod
    def infer_domain(normalized_text: str) -> list[str]:
        return _match_tags(normalized_text, DOMAIN_RULES)

    def to_document(self, field: FieldMetadata) -> Document:
        return Document(id=field.name, text=self.describe(field), attributes=field.attributes())

    def to_documents(self, fields: Iterable[FieldMetadata]) -> list[Document]:
        return [self.to_document(field) for field in fields]
