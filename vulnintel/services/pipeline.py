"""
End-to-end orchestration: aggregate -> retrieve -> generate -> index -> output.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from vulnintel.core.config import Settings, get_settings
from vulnintel.core.errors import ExhaustedFallbackError, FetchError
from vulnintel.logging_config import bind_request_context, clear_request_context
from vulnintel.models.records import CanonicalRecord, GenerationResponse, IndexEntry, RetrievalResult
from vulnintel.services.aggregator import AggregationReport, Aggregator
from vulnintel.services.fetchers import NvdFetcher, create_fetchers
from vulnintel.services.fetchers.parsing import nvd_base_score
from vulnintel.services.generation import GenerationDispatcher, create_dispatcher
from vulnintel.services.http_client import ResilientHttpClient, create_http_client
from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics
from vulnintel.services.output import MarkdownFileSink, OutputSink
from vulnintel.services.similarity_index import SimilarityIndex
from vulnintel.utils.error_handling import classify_and_log_error

logger = structlog.get_logger(__name__)


@dataclass
class PipelineResult:
    cve_id: str
    record: CanonicalRecord
    context: RetrievalResult
    response: GenerationResponse
    report: Optional[AggregationReport] = None
    output_path: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.record.degraded or self.response.degraded

    def summary(self) -> Dict[str, Any]:
        return {
            "cve_id": self.cve_id,
            "backend": self.response.backend,
            "model": self.response.model,
            "fallback_from": self.response.fallback_from,
            "degraded": self.degraded,
            "provenance": list(self.record.provenance),
            "related": self.context.ids,
            "tokens": self.response.usage.total,
            "output_path": self.output_path,
        }


class VulnerabilityPipeline:
    def __init__(
        self,
        aggregator: Aggregator,
        index: SimilarityIndex,
        dispatcher: GenerationDispatcher,
        output: Optional[OutputSink] = None,
        *,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsFacade] = None,
        nvd: Optional[NvdFetcher] = None,
        http: Optional[ResilientHttpClient] = None,
    ) -> None:
        self.aggregator = aggregator
        self.index = index
        self.dispatcher = dispatcher
        self.output = output
        self.settings = settings or get_settings()
        self.metrics = metrics or default_metrics
        self.nvd = nvd
        self.http = http

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        metrics: Optional[MetricsFacade] = None,
    ) -> "VulnerabilityPipeline":
        settings = settings or get_settings()
        metrics = metrics or default_metrics
        http = create_http_client(settings, metrics=metrics)
        fetchers = create_fetchers(http, settings)
        index = SimilarityIndex(settings.index_path)
        index.load()
        return cls(
            Aggregator(fetchers, settings=settings, metrics=metrics),
            index,
            create_dispatcher(http, settings, metrics=metrics),
            MarkdownFileSink(settings.output_dir),
            settings=settings,
            metrics=metrics,
            nvd=NvdFetcher(http, settings),
            http=http,
        )

    async def close(self) -> None:
        await self.dispatcher.close()
        if self.http is not None:
            await self.http.close()

    async def __aenter__(self) -> "VulnerabilityPipeline":
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.close()

    async def run(
        self,
        cve_id: str,
        *,
        prompt: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> PipelineResult:
        """Produce a write-up for ``cve_id``.

        Source failures degrade the record rather than abort; index and
        output failures are logged. Only ``ExhaustedFallbackError`` escapes.
        """
        cve_id = cve_id.strip().upper()
        bind_request_context(request_id=uuid.uuid4().hex[:12], cve_id=cve_id)
        try:
            report = await self.aggregator.collect(cve_id)
            record = report.record
            context = await self.index.retrieve(record, limit=self.settings.retrieval_limit)

            try:
                response = await self.dispatcher.generate(record, context, prompt=prompt, backend=backend)
            except ExhaustedFallbackError as e:
                classify_and_log_error(e, "generation", {"cve_id": cve_id}, metrics=self.metrics)
                raise

            result = PipelineResult(
                cve_id=cve_id, record=record, context=context, response=response, report=report
            )

            if not record.degraded:
                try:
                    await self.index.upsert(IndexEntry.from_record(record))
                except OSError as e:
                    classify_and_log_error(e, "similarity_index", {"cve_id": cve_id}, metrics=self.metrics)

            if self.output is not None:
                try:
                    result.output_path = self.output.write(response.text, record, response)
                except OSError as e:
                    classify_and_log_error(e, "output", {"cve_id": cve_id}, metrics=self.metrics)

            logger.info("Pipeline completed", **result.summary())
            return result
        finally:
            clear_request_context()

    async def find_latest_critical(self, days_back: int = 7) -> Optional[str]:
        """Highest-scored CRITICAL CVE published in the last ``days_back`` days."""
        if self.nvd is None:
            return None
        try:
            cves = await self.nvd.fetch_recent(days_back, severity="CRITICAL", limit=50)
        except FetchError as e:
            classify_and_log_error(e, "nvd", {"days_back": days_back}, metrics=self.metrics)
            return None
        if not cves:
            logger.info("No recent critical CVEs found", days_back=days_back)
            return None
        best = max(cves, key=lambda c: (nvd_base_score(c), c.get("published") or ""))
        logger.info("Selected latest critical CVE", cve_id=best.get("id"), score=nvd_base_score(best))
        return best.get("id")
