"""AlienVault OTX indicator lookups (enrichment)."""

from __future__ import annotations

from typing import Optional

import structlog

from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing

logger = structlog.get_logger(__name__)

OTX_API_URL = "https://otx.alienvault.com/api/v1/indicators/cve/{cve_id}/general"


class OtxFetcher(BaseFetcher):
    name = "otx"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        if not self.api_key:
            logger.debug("OTX API key not configured; skipping", cve_id=cve_id)
            return None
        payload = await self.client.get_json(
            OTX_API_URL.format(cve_id=parsing.normalize_cve_id(cve_id)),
            headers={"X-OTX-API-KEY": self.api_key},
        )
        if not payload:
            return None
        return parsing.parse_otx_general(payload, source_name=self.name)
