"""
Span Attribute Keys

GenAI keys follow the OpenTelemetry semantic conventions; retrieval keys
are our own namespace.

Reference: https://opentelemetry.io/docs/specs/semconv/gen-ai/
"""

# ---------------------------------------------------------------------------
# GENAI NAMESPACE (OTel standard)
# ---------------------------------------------------------------------------

GEN_AI_SYSTEM = "gen_ai.system"  # "openai", "mock"
GEN_AI_REQUEST_MODEL = "gen_ai.request.model"  # full model_id


# ---------------------------------------------------------------------------
# RETRIEVAL NAMESPACE (custom)
# ---------------------------------------------------------------------------

RETRIEVAL_COLLECTION = "retrieval.collection"  # "query_cookbook", "field_metadata"
RETRIEVAL_QUERY_TEXT = "retrieval.query_text"  # only with capture_query_text
RETRIEVAL_MAX_RESULTS = "retrieval.max_results"
RETRIEVAL_RESULT_COUNT = "retrieval.result_count"
RETRIEVAL_TOP_SCORE = "retrieval.top_score"
RETRIEVAL_LATENCY_MS = "retrieval.latency_ms"

# Rebuild
RETRIEVAL_REBUILD_REASON = "retrieval.rebuild_reason"  # "hash_mismatch", ...
RETRIEVAL_DOCUMENT_COUNT = "retrieval.document_count"
RETRIEVAL_REBUILD_SECONDS = "retrieval.rebuild_seconds"


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def rebuild_attributes(collection: str, reason: str, document_count: int) -> dict:
    """Create attributes dict for a cache rebuild span."""
    return {
        RETRIEVAL_COLLECTION: collection,
        RETRIEVAL_REBUILD_REASON: reason,
        RETRIEVAL_DOCUMENT_COUNT: document_count,
    }


def retrieve_attributes(
    collection: str,
    max_results: int,
    model_id: str,
    query_text: str | None = None,
) -> dict:
    """Create attributes dict for a retrieve span."""
    attrs = {
        RETRIEVAL_COLLECTION: collection,
        RETRIEVAL_MAX_RESULTS: max_results,
        GEN_AI_SYSTEM: model_id.split(":", 1)[0],
        GEN_AI_REQUEST_MODEL: model_id,
    }
    if query_text is not None:
        attrs[RETRIEVAL_QUERY_TEXT] = query_text
    return attrs
