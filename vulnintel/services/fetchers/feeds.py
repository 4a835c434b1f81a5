"""
RSS/Atom advisory feeds (enrichment).

Every feed source downloads a recent-items document and keeps the items
that mention the requested id. Items are only as recent as the feed, so
older ids routinely come back empty.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from vulnintel.core.errors import FetchError
from vulnintel.models.records import PartialRecord
from vulnintel.services.fetchers.base import BaseFetcher
from vulnintel.services.fetchers import parsing
from vulnintel.utils.date_utils import get_current_utc

logger = structlog.get_logger(__name__)

SANS_ISC_FEED_URL = "https://isc.sans.edu/rssfeed_full.xml"
CERT_CC_FEED_URL = "https://www.kb.cert.org/vuls/atomfeed/"
ZDI_FEED_URL = "https://www.zerodayinitiative.com/rss/published/"
VULDB_FEED_URL = "https://vuldb.com/?rss.recent"


class FeedFetcher(BaseFetcher):
    feed_url: str = ""
    label: str = ""

    def feed_urls(self) -> List[str]:
        return [self.feed_url]

    async def _items_for(self, cve_id: str) -> List[parsing.FeedItem]:
        text = await self.client.get_text(self.feed_urls()[0])
        return parsing.items_mentioning(parsing.parse_feed(text), cve_id) if text else []

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        items = await self._items_for(cve_id)
        return parsing.feed_partial(items, self.name, self.label or self.name)


class SansIscFetcher(FeedFetcher):
    name = "sans_isc"
    feed_url = SANS_ISC_FEED_URL
    label = "SANS ISC"


class CertCcFetcher(FeedFetcher):
    name = "cert_cc"
    feed_url = CERT_CC_FEED_URL
    label = "CERT/CC"


class ZdiFetcher(FeedFetcher):
    """ZDI publishes one feed per year; try this year, last year, then the base feed."""

    name = "zdi"
    feed_url = ZDI_FEED_URL
    label = "ZDI"

    def feed_urls(self) -> List[str]:
        year = get_current_utc().year
        return [f"{ZDI_FEED_URL}{year}", f"{ZDI_FEED_URL}{year - 1}", ZDI_FEED_URL]

    async def _items_for(self, cve_id: str) -> List[parsing.FeedItem]:
        last_error: Optional[FetchError] = None
        fetched_any = False
        for url in self.feed_urls():
            try:
                text = await self.client.get_text(url)
            except FetchError as e:
                logger.debug("ZDI feed unavailable", url=url, error=str(e))
                last_error = e
                continue
            fetched_any = True
            items = parsing.items_mentioning(parsing.parse_feed(text), cve_id) if text else []
            if items:
                return items
        if not fetched_any and last_error is not None:
            raise last_error
        return []


class VulDbFetcher(FeedFetcher):
    name = "vuldb"
    feed_url = VULDB_FEED_URL
    label = "VulDB"

    async def _fetch(self, cve_id: str) -> Optional[PartialRecord]:
        items = await self._items_for(cve_id)
        return parsing.parse_vuldb_items(items, source_name=self.name)
