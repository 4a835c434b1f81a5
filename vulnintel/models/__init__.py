from vulnintel.models.records import (
    AffectedEntity,
    CanonicalRecord,
    ExploitReference,
    GenerationRequest,
    GenerationResponse,
    IndexEntry,
    PartialRecord,
    RetrievalHit,
    RetrievalResult,
    TokenUsage,
)

__all__ = [
    "AffectedEntity",
    "CanonicalRecord",
    "ExploitReference",
    "GenerationRequest",
    "GenerationResponse",
    "IndexEntry",
    "PartialRecord",
    "RetrievalHit",
    "RetrievalResult",
    "TokenUsage",
]
