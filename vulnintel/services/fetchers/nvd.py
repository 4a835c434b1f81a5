"""NVD CVE API 2.0 (primary source)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from vulnintel.core.errors import FetchError
from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing
from vulnintel.utils.date_utils import days_ago, get_current_utc, nvd_timestamp

logger = structlog.get_logger(__name__)

NVD_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"

# pubStartDate/pubEndDate windows may not exceed 120 days
MAX_WINDOW_DAYS = 120


class NvdFetcher(BaseFetcher):
    name = "nvd"

    def _headers(self) -> Dict[str, str]:
        return {"apiKey": self.api_key} if self.api_key else {}

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        payload = await self.client.get_json(
            NVD_API_URL, params={"cveId": parsing.normalize_cve_id(cve_id)}, headers=self._headers()
        )
        if not payload:
            return None
        vulns = payload["vulnerabilities"]
        if not vulns:
            return None
        return parsing.parse_nvd_cve(vulns[0]["cve"], source_name=self.name)

    async def fetch_recent(
        self,
        days_back: int = 30,
        *,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Raw ``cve`` objects published in the last ``days_back`` days, newest first."""
        days_back = max(1, min(days_back, MAX_WINDOW_DAYS))
        end = get_current_utc()
        params: Dict[str, Any] = {
            "pubStartDate": nvd_timestamp(days_ago(days_back, now=end)),
            "pubEndDate": nvd_timestamp(end),
            "resultsPerPage": max(1, min(limit, 2000)),
        }
        if severity:
            params["cvssV3Severity"] = severity.upper()

        try:
            payload = await self.client.get_json(NVD_API_URL, params=params, headers=self._headers())
        except FetchError as e:
            raise e.with_source(self.name)
        if not payload:
            return []
        cves = [item["cve"] for item in payload.get("vulnerabilities") or [] if "cve" in item]
        cves.sort(key=lambda c: c.get("published") or "", reverse=True)
        logger.info(
            "Fetched recent NVD CVEs",
            days_back=days_back,
            severity=severity,
            count=len(cves),
            total_results=payload.get("totalResults"),
        )
        return cves[:limit]
