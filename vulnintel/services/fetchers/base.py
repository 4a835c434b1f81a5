"""
Fetcher base class and the per-source outcome type.

``fetch`` is the strict boundary: it returns a ``PartialRecord`` (or None
when the source has nothing for the id) and raises ``FetchError`` subclasses
tagged with the source name. ``safe_fetch`` wraps it for the aggregator and
never raises anything but cancellation.
"""

from __future__ import annotations

import asyncio
import csv
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

import structlog

from vulnintel.core.config import Settings, SourceSettings, get_settings
from vulnintel.core.errors import FetchError, ParseError, TransportError
from vulnintel.models.records import PartialRecord
from vulnintel.services.http_client import ResilientHttpClient

logger = structlog.get_logger(__name__)

PARSE_ERRORS = (ValueError, KeyError, TypeError, ET.ParseError, csv.Error)


@dataclass
class SourceOutcome:
    source: str
    tier: str
    record: Optional[PartialRecord] = None
    error: Optional[FetchError] = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.record is not None

    @property
    def status(self) -> str:
        if self.timed_out:
            return "timeout"
        if self.error is not None:
            return "error"
        return "ok" if self.record is not None else "empty"


class BaseFetcher:
    """Common plumbing for one external source."""

    name: str = ""

    def __init__(self, client: ResilientHttpClient, settings: Optional[Settings] = None):
        if not self.name:
            raise ValueError(f"{type(self).__name__} must define a source name")
        self.client = client
        self.settings = settings or get_settings()

    @property
    def config(self) -> SourceSettings:
        return self.settings.source(self.name)

    @property
    def tier(self) -> str:
        return self.config.tier

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def api_key(self) -> Optional[str]:
        return self.config.api_key

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        raise NotImplementedError

    async def fetch(self, cve_id: str) -> Optional[PartialRecord]:
        try:
            record = await self._fetch(cve_id)
        except FetchError as e:
            if e.status == 404:
                logger.debug("Source has no record", source=self.name, cve_id=cve_id)
                return None
            raise e.with_source(self.name)
        except PARSE_ERRORS as e:
            raise ParseError(
                f"Malformed {self.name} payload: {type(e).__name__}: {e}", source=self.name
            ) from e

        if record is not None and not record.has_data():
            return None
        return record

    async def safe_fetch(self, cve_id: str, timeout: Optional[float] = None) -> SourceOutcome:
        """Run ``fetch`` under a timeout, capturing any failure in the outcome."""
        timeout = self.config.timeout if timeout is None else timeout
        outcome = SourceOutcome(source=self.name, tier=self.tier)
        start = time.perf_counter()
        try:
            outcome.record = await asyncio.wait_for(self.fetch(cve_id), timeout=timeout)
        except asyncio.TimeoutError:
            outcome.timed_out = True
            outcome.error = TransportError(
                f"Timed out after {timeout:.1f}s", source=self.name
            )
            logger.warning("Source timed out", source=self.name, cve_id=cve_id, timeout=timeout)
        except FetchError as e:
            outcome.error = e.with_source(self.name)
            logger.warning(
                "Source fetch failed",
                source=self.name,
                cve_id=cve_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            outcome.error = FetchError(f"Unexpected error: {type(e).__name__}: {e}", source=self.name)
            logger.error("Source fetch crashed", source=self.name, cve_id=cve_id, exc_info=True)
        finally:
            outcome.duration_ms = (time.perf_counter() - start) * 1000.0
        return outcome

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name} tier={self.tier}>"
