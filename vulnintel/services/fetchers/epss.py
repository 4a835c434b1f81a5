"""FIRST Exploit Prediction Scoring System (enrichment)."""

from __future__ import annotations

from typing import Optional

from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing

EPSS_API_URL = "https://api.first.org/data/v1/epss"


class EpssFetcher(BaseFetcher):
    name = "epss"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        payload = await self.client.get_json(
            EPSS_API_URL, params={"cve": parsing.normalize_cve_id(cve_id)}
        )
        if not payload:
            return None
        return parsing.parse_epss(payload, cve_id, source_name=self.name)
