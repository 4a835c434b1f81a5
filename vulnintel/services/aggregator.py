"""
Tiered multi-source aggregation for one CVE.

Order of work:

1. primary sources, one after another in configured order;
2. secondary and enrichment sources together, as a bounded parallel
   fan-out under what is left of the request deadline;
3. if neither primary nor secondary produced anything, a minimal record
   stands in for them so callers always receive a ``CanonicalRecord``.

Partials are folded in tier order (primary, secondary, minimal,
enrichment; configured order within a tier), so scalar fields resolve
deterministically regardless of which task finished first.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from vulnintel.core.config import (
    TIER_ENRICHMENT,
    TIER_PRIMARY,
    TIER_SECONDARY,
    Settings,
    get_settings,
)
from vulnintel.core.errors import TransportError
from vulnintel.models.records import (
    SCALAR_FIELDS,
    AffectedEntity,
    CanonicalRecord,
    ExploitReference,
    PartialRecord,
)
from vulnintel.services.fetchers.base import BaseFetcher, SourceOutcome
from vulnintel.services.fetchers.parsing import normalize_cve_id, severity_from_score
from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics

logger = structlog.get_logger(__name__)

MINIMAL_SOURCE = "minimal"
MINIMAL_DESCRIPTION = (
    "No authoritative details are available for {cve_id} yet. "
    "Details may be reserved, under embargo, or not yet published."
)


# --------------------------------------------------------------------------- #
#                                   Merge                                     #
# --------------------------------------------------------------------------- #


def minimal_partial(cve_id: str) -> PartialRecord:
    return PartialRecord(
        source_name=MINIMAL_SOURCE,
        description=MINIMAL_DESCRIPTION.format(cve_id=normalize_cve_id(cve_id)),
    )


def minimal_record(cve_id: str) -> CanonicalRecord:
    """Placeholder record carrying only the id; always constructible."""
    return merge_partials(cve_id, [minimal_partial(cve_id)])


def merge_partials(
    cve_id: str,
    partials: Sequence[PartialRecord],
    *,
    max_references: int = 10,
) -> CanonicalRecord:
    """Fold ``partials`` (already in priority order) into one record.

    Scalars: first non-None wins. Collections: union in first-seen order.
    References are trimmed, deduplicated by exact string and capped.
    """
    contributing = [p for p in partials if p.has_data()]
    if not contributing:
        contributing = [minimal_partial(cve_id)]

    scalars: Dict[str, object] = {}
    for name in SCALAR_FIELDS:
        for partial in contributing:
            value = getattr(partial, name)
            if value is not None:
                scalars[name] = value
                break

    taxonomy: List[str] = []
    references: List[str] = []
    narrative: List[str] = []
    entities: List[AffectedEntity] = []
    exploits: List[ExploitReference] = []
    seen_entities = set()
    seen_exploits = set()
    provenance: List[str] = []

    for partial in contributing:
        if partial.source_name not in provenance:
            provenance.append(partial.source_name)
        for tid in partial.taxonomy_ids or []:
            tid = tid.strip().upper()
            if tid and tid not in taxonomy:
                taxonomy.append(tid)
        for ref in partial.references or []:
            ref = ref.strip()
            if ref and ref not in references:
                references.append(ref)
        for note in partial.narrative or []:
            if note and note not in narrative:
                narrative.append(note)
        for entity in partial.affected_entities or []:
            if entity.key not in seen_entities:
                seen_entities.add(entity.key)
                entities.append(entity)
        for exploit in partial.exploits or []:
            if exploit.url not in seen_exploits:
                seen_exploits.add(exploit.url)
                exploits.append(exploit)

    if scalars.get("severity_label") is None and scalars.get("severity_score") is not None:
        scalars["severity_label"] = severity_from_score(scalars["severity_score"])  # type: ignore[arg-type]

    return CanonicalRecord(
        id=normalize_cve_id(cve_id),
        taxonomy_ids=tuple(taxonomy),
        affected_entities=tuple(entities),
        references=tuple(references[: max(0, max_references)]),
        exploits=tuple(exploits),
        narrative=tuple(narrative),
        provenance=tuple(provenance),
        degraded=MINIMAL_SOURCE in provenance,
        **scalars,
    )


# --------------------------------------------------------------------------- #
#                                 Aggregator                                  #
# --------------------------------------------------------------------------- #


@dataclass
class AggregationReport:
    cve_id: str
    record: CanonicalRecord
    outcomes: List[SourceOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def failed(self) -> List[str]:
        return [o.source for o in self.outcomes if o.error is not None and not o.timed_out]

    @property
    def timed_out(self) -> List[str]:
        return [o.source for o in self.outcomes if o.timed_out]

    def summary(self) -> Dict[str, object]:
        return {
            "cve_id": self.cve_id,
            "provenance": list(self.record.provenance),
            "degraded": self.record.degraded,
            "sources": {o.source: o.status for o in self.outcomes},
            "duration_ms": round(self.duration_ms, 2),
        }


class Aggregator:
    def __init__(
        self,
        fetchers: Iterable[BaseFetcher],
        *,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsFacade] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.metrics = metrics or default_metrics
        self.fetchers = [f for f in fetchers if f.enabled]

    def _tier(self, tier: str) -> List[BaseFetcher]:
        return [f for f in self.fetchers if f.tier == tier]

    async def aggregate(self, cve_id: str, *, deadline: Optional[float] = None) -> CanonicalRecord:
        report = await self.collect(cve_id, deadline=deadline)
        return report.record

    async def collect(self, cve_id: str, deadline: Optional[float] = None) -> AggregationReport:
        """Query every enabled source and return the merged record with per-source outcomes."""
        cve_id = normalize_cve_id(cve_id)
        budget = self.settings.aggregator_deadline if deadline is None else deadline
        loop = asyncio.get_running_loop()
        started = loop.time()
        expires_at = started + budget

        primary_outcomes: List[SourceOutcome] = []
        for fetcher in self._tier(TIER_PRIMARY):
            remaining = expires_at - loop.time()
            if remaining <= 0:
                primary_outcomes.append(self._expired(fetcher))
                continue
            primary_outcomes.append(
                await fetcher.safe_fetch(cve_id, timeout=min(fetcher.config.timeout, remaining))
            )

        parallel = self._tier(TIER_SECONDARY) + self._tier(TIER_ENRICHMENT)
        parallel_outcomes = await self._fan_out(cve_id, parallel, expires_at)

        by_source = {o.source: o for o in parallel_outcomes}
        secondary_outcomes = [by_source[f.name] for f in self._tier(TIER_SECONDARY)]
        enrichment_outcomes = [by_source[f.name] for f in self._tier(TIER_ENRICHMENT)]

        authoritative = [o.record for o in primary_outcomes + secondary_outcomes if o.record is not None]
        partials: List[PartialRecord] = list(authoritative)
        if not authoritative:
            logger.warning("No primary or secondary data; using minimal record", cve_id=cve_id)
            self.metrics.increment("minimal_fallbacks")
            partials.append(minimal_partial(cve_id))
        partials.extend(o.record for o in enrichment_outcomes if o.record is not None)

        record = merge_partials(cve_id, partials, max_references=self.settings.max_references)

        outcomes = primary_outcomes + secondary_outcomes + enrichment_outcomes
        for outcome in outcomes:
            if outcome.error is not None:
                self.metrics.increment("source_failures", outcome.source)

        report = AggregationReport(
            cve_id=cve_id,
            record=record,
            outcomes=outcomes,
            duration_ms=(loop.time() - started) * 1000.0,
        )
        logger.info("Aggregated vulnerability record", **report.summary())
        return report

    async def _fan_out(
        self,
        cve_id: str,
        fetchers: List[BaseFetcher],
        expires_at: float,
    ) -> List[SourceOutcome]:
        if not fetchers:
            return []
        loop = asyncio.get_running_loop()
        remaining = expires_at - loop.time()
        if remaining <= 0:
            return [self._expired(f) for f in fetchers]

        sem = asyncio.Semaphore(max(1, self.settings.max_concurrency or len(fetchers)))

        async def _run(fetcher: BaseFetcher) -> SourceOutcome:
            async with sem:
                left = expires_at - loop.time()
                if left <= 0:
                    return self._expired(fetcher)
                return await fetcher.safe_fetch(cve_id, timeout=min(fetcher.config.timeout, left))

        tasks = {f.name: asyncio.create_task(_run(f)) for f in fetchers}
        done, pending = await asyncio.wait(tasks.values(), timeout=remaining)

        # Late results are discarded; the deadline wins
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: List[SourceOutcome] = []
        for fetcher in fetchers:
            task = tasks[fetcher.name]
            if task in done and not task.cancelled() and task.exception() is None:
                outcomes.append(task.result())
            else:
                outcomes.append(self._expired(fetcher))
        return outcomes

    @staticmethod
    def _expired(fetcher: BaseFetcher) -> SourceOutcome:
        logger.warning("Source abandoned at aggregation deadline", source=fetcher.name)
        return SourceOutcome(
            source=fetcher.name,
            tier=fetcher.tier,
            timed_out=True,
            error=TransportError("Aggregation deadline exceeded", source=fetcher.name),
        )
