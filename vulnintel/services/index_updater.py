"""
Incremental refresh of the similarity index from NVD's recent-CVE feed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import structlog

from vulnintel.core.config import Settings, get_settings
from vulnintel.core.errors import ParseError
from vulnintel.models.records import IndexEntry
from vulnintel.services.aggregator import merge_partials
from vulnintel.services.fetchers.base import PARSE_ERRORS
from vulnintel.services.fetchers.nvd import NvdFetcher
from vulnintel.services.fetchers.parsing import nvd_base_score, parse_nvd_cve
from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics
from vulnintel.services.similarity_index import SimilarityIndex

logger = structlog.get_logger(__name__)


@dataclass
class UpdateSummary:
    fetched: int = 0
    filtered: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class IndexUpdater:
    def __init__(
        self,
        index: SimilarityIndex,
        nvd: NvdFetcher,
        *,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsFacade] = None,
    ) -> None:
        self.index = index
        self.nvd = nvd
        self.settings = settings or get_settings()
        self.metrics = metrics or default_metrics

    def _to_entries(self, cves: List[Dict[str, Any]], min_cvss: float) -> List[IndexEntry]:
        entries: List[IndexEntry] = []
        for cve in cves:
            if nvd_base_score(cve) < min_cvss:
                continue
            try:
                partial = parse_nvd_cve(cve, source_name=self.nvd.name)
            except PARSE_ERRORS as e:
                logger.warning("Skipping unparseable NVD entry", cve_id=cve.get("id"), error=str(e))
                continue
            record = merge_partials(cve["id"], [partial], max_references=self.settings.max_references)
            entries.append(IndexEntry.from_record(record))
        return entries

    async def update(
        self,
        days_back: Optional[int] = None,
        min_cvss: Optional[float] = None,
        force: bool = False,
        limit: int = 100,
    ) -> UpdateSummary:
        """Fetch recent CVEs at or above ``min_cvss`` and fold them into the index.

        ``force`` replaces the index with just this batch. Otherwise new ids
        are added, changed entries replaced and identical ones left alone.
        """
        days_back = self.settings.index_days_back if days_back is None else days_back
        min_cvss = self.settings.index_min_cvss if min_cvss is None else min_cvss

        try:
            cves = await self.nvd.fetch_recent(days_back, limit=limit)
        except PARSE_ERRORS as e:
            raise ParseError(f"Malformed NVD recent payload: {e}", source=self.nvd.name) from e

        entries = self._to_entries(cves, min_cvss)
        summary = UpdateSummary(fetched=len(cves), filtered=len(cves) - len(entries))
        metadata = {"min_cvss": min_cvss, "days_back": days_back}

        if force:
            summary.added = await self.index.rebuild(entries, metadata=metadata)
        else:
            changed: List[IndexEntry] = []
            for entry in entries:
                existing = self.index.get(entry.id)
                if existing is None:
                    summary.added += 1
                elif existing != entry:
                    summary.updated += 1
                else:
                    summary.skipped += 1
                    continue
                changed.append(entry)
            await self.index.upsert_many(changed, metadata=metadata)

        summary.total = len(self.index)
        self.metrics.increment("index_updates", "rebuild" if force else "incremental")
        logger.info("Similarity index updated", force=force, **summary.to_dict())
        return summary
