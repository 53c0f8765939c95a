"""
Document model for the retrieval system.

Single responsibility: Define the structure of documents
stored in vector indexes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Document:
    """
    An immutable record of one collection.

    text is what gets embedded, which for field metadata is a synthesized
    description rather than the raw field name. attributes must be JSON
    serializable; they are persisted next to the vectors.
    """

    id: str
    text: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def fingerprint_payload(self) -> dict[str, Any]:
        """Fields that affect the embedding or the stored snapshot."""
        return {"text": self.text, "attributes": self.attributes}

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "text": self.text,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Document":
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            attributes=dict(data.get("attributes") or {}),
        )
