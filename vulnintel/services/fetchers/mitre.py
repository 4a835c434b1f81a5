"""MITRE CVE Services (secondary source)."""

from __future__ import annotations

from typing import Optional

from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing

MITRE_API_URL = "https://cveawg.mitre.org/api/cve/{cve_id}"


class MitreFetcher(BaseFetcher):
    name = "mitre"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        payload = await self.client.get_json(
            MITRE_API_URL.format(cve_id=parsing.normalize_cve_id(cve_id))
        )
        if not payload:
            return None
        return parsing.parse_mitre_record(payload, source_name=self.name)
