"""CISA Known Exploited Vulnerabilities catalog (enrichment)."""

from __future__ import annotations

from typing import Optional

from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing

KEV_CATALOG_URL = (
    "https://www.cisa.gov/sites/default/files/feeds/known_exploited_vulnerabilities.json"
)


class CisaKevFetcher(BaseFetcher):
    """Looks the id up in the full catalog; the catalog itself is cached by the client."""

    name = "cisa_kev"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        catalog = await self.client.get_json(KEV_CATALOG_URL)
        if not catalog:
            return None
        entry = parsing.match_kev_entry(catalog, cve_id)
        if entry is None:
            return None
        return parsing.parse_kev_entry(entry, source_name=self.name)
