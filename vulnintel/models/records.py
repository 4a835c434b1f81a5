"""
Record models shared by fetchers, the aggregator, the index and the
generation dispatcher.

``PartialRecord`` is what one source knows about one CVE: every field is
optional and ``None`` means "no opinion". ``CanonicalRecord`` is the frozen
merge of those partials. ``IndexEntry`` is the flattened projection that the
similarity index persists.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

SeverityLabel = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW", "NONE"]
RetrievalReason = Literal["exact", "taxonomy", "entity", "recency"]
Phase = Literal["extract", "synthesize"]

# Fields merged with "first non-absent value wins"
SCALAR_FIELDS: Tuple[str, ...] = (
    "description",
    "severity_score",
    "severity_label",
    "vector_string",
    "published_at",
    "last_modified_at",
    "known_exploited",
    "kev_due_date",
    "kev_required_action",
    "exploit_probability",
    "exploit_percentile",
)


class AffectedEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor: str = ""
    product: str
    version_range: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.vendor}:{self.product}" if self.vendor else self.product

    @property
    def key(self) -> Tuple[str, str]:
        return (self.vendor.strip().lower(), self.product.strip().lower())


class ExploitReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    url: str
    title: Optional[str] = None
    published_at: Optional[str] = None
    verified: Optional[bool] = None


class PartialRecord(BaseModel):
    """One source's view of one CVE."""

    source_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    severity_score: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    severity_label: Optional[SeverityLabel] = None
    vector_string: Optional[str] = None
    taxonomy_ids: Optional[List[str]] = None
    affected_entities: Optional[List[AffectedEntity]] = None
    references: Optional[List[str]] = None
    published_at: Optional[str] = None
    last_modified_at: Optional[str] = None

    known_exploited: Optional[bool] = None
    kev_due_date: Optional[str] = None
    kev_required_action: Optional[str] = None
    exploit_probability: Optional[float] = None
    exploit_percentile: Optional[float] = None
    exploits: Optional[List[ExploitReference]] = None
    narrative: Optional[List[str]] = None

    def has_data(self) -> bool:
        for name in type(self).model_fields:
            if name == "source_name":
                continue
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, list) and not value:
                continue
            return True
        return False


class CanonicalRecord(BaseModel):
    """Merged, immutable view of a CVE built from partials in tier order."""

    model_config = ConfigDict(frozen=True)

    id: str
    description: Optional[str] = None
    severity_score: Optional[float] = None
    severity_label: Optional[SeverityLabel] = None
    vector_string: Optional[str] = None
    published_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    known_exploited: Optional[bool] = None
    kev_due_date: Optional[str] = None
    kev_required_action: Optional[str] = None
    exploit_probability: Optional[float] = None
    exploit_percentile: Optional[float] = None

    taxonomy_ids: Tuple[str, ...] = ()
    affected_entities: Tuple[AffectedEntity, ...] = ()
    references: Tuple[str, ...] = ()
    exploits: Tuple[ExploitReference, ...] = ()
    narrative: Tuple[str, ...] = ()

    provenance: Tuple[str, ...]
    degraded: bool = False

    @field_validator("provenance")
    @classmethod
    def _provenance_not_empty(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value:
            raise ValueError("provenance must name at least one source")
        return value

    @property
    def primary_product(self) -> Optional[str]:
        for entity in self.affected_entities:
            if entity.product:
                return entity.product
        return None

    @property
    def affected_products(self) -> List[str]:
        return [e.label for e in self.affected_entities]

    def to_facts(self) -> str:
        """Deterministic plain-text fact sheet used as prompt input."""
        lines = [f"CVE ID: {self.id}"]
        if self.description:
            lines.append(f"Description: {self.description}")
        if self.severity_label or self.severity_score is not None:
            score = f" (CVSS {self.severity_score:.1f})" if self.severity_score is not None else ""
            lines.append(f"Severity: {self.severity_label or 'UNKNOWN'}{score}")
        if self.vector_string:
            lines.append(f"CVSS Vector: {self.vector_string}")
        if self.published_at:
            lines.append(f"Published: {self.published_at}")
        if self.taxonomy_ids:
            lines.append(f"Weaknesses: {', '.join(self.taxonomy_ids)}")
        if self.affected_entities:
            products = []
            for e in self.affected_entities:
                products.append(f"{e.label} ({e.version_range})" if e.version_range else e.label)
            lines.append(f"Affected Products: {', '.join(products)}")
        if self.known_exploited:
            kev = "Known Exploited (CISA KEV): yes"
            if self.kev_due_date:
                kev += f", remediation due {self.kev_due_date}"
            lines.append(kev)
            if self.kev_required_action:
                lines.append(f"Required Action: {self.kev_required_action}")
        if self.exploit_probability is not None:
            pct = (
                f" (percentile {self.exploit_percentile:.3f})"
                if self.exploit_percentile is not None
                else ""
            )
            lines.append(f"EPSS: {self.exploit_probability:.3f}{pct}")
        if self.exploits:
            lines.append("Public Exploits:")
            lines.extend(f"- {x.title or x.source}: {x.url}" for x in self.exploits)
        if self.narrative:
            lines.append("Technical Notes:")
            lines.extend(f"- {n}" for n in self.narrative)
        if self.references:
            lines.append("References:")
            lines.extend(f"- {r}" for r in self.references)
        lines.append(f"Sources: {', '.join(self.provenance)}")
        return "\n".join(lines)


class IndexEntry(BaseModel):
    """Searchable projection of a canonical record."""

    model_config = ConfigDict(frozen=True)

    id: str
    published_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    description: Optional[str] = None
    severity_label: Optional[SeverityLabel] = None
    severity_score: Optional[float] = None
    vector_string: Optional[str] = None
    taxonomy_ids: List[str] = Field(default_factory=list)
    affected_products: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: CanonicalRecord) -> "IndexEntry":
        return cls(
            id=record.id,
            published_at=record.published_at,
            last_modified_at=record.last_modified_at,
            description=record.description,
            severity_label=record.severity_label,
            severity_score=record.severity_score,
            vector_string=record.vector_string,
            taxonomy_ids=list(record.taxonomy_ids),
            affected_products=record.affected_products,
            references=list(record.references),
        )


class RetrievalHit(BaseModel):
    entry: IndexEntry
    reason: RetrievalReason


class RetrievalResult(BaseModel):
    hits: List[RetrievalHit] = Field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [h.entry.id for h in self.hits]

    @property
    def entries(self) -> List[IndexEntry]:
        return [h.entry for h in self.hits]

    def reasons(self) -> Dict[str, str]:
        return {h.entry.id: h.reason for h in self.hits}

    def __len__(self) -> int:
        return len(self.hits)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    estimated: bool = False

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class GenerationRequest(BaseModel):
    record: CanonicalRecord
    context: RetrievalResult = Field(default_factory=RetrievalResult)
    tier: Phase = "synthesize"
    prompt: Optional[str] = None
    digest: Optional[str] = None
    backend: Optional[str] = None


class GenerationResponse(BaseModel):
    text: str
    backend: str
    model: str
    tier: Phase
    usage: TokenUsage = Field(default_factory=TokenUsage)
    fallback_from: Optional[str] = None
    degraded: bool = False
    digest: Optional[str] = None
