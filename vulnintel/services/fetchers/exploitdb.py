"""Exploit-DB public exploit index (enrichment)."""

from __future__ import annotations

from typing import Optional

import structlog

from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing

logger = structlog.get_logger(__name__)

EXPLOITDB_CSV_URL = "https://www.exploit-db.com/download/exploitdb.csv"
MAX_EXPLOITS = 5


class ExploitDbFetcher(BaseFetcher):
    name = "exploitdb"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        text = await self.client.get_text(EXPLOITDB_CSV_URL)
        if not text:
            return None
        exploits = parsing.parse_exploitdb_csv(text, cve_id)
        if not exploits:
            return None
        logger.debug("Found public exploits", source=self.name, cve_id=cve_id, count=len(exploits))
        exploits = exploits[:MAX_EXPLOITS]
        return PartialRecord(
            source_name=self.name,
            exploits=exploits,
            references=[x.url for x in exploits],
            narrative=[f"Exploit-DB: {len(exploits)} public exploit(s) available"],
        )
