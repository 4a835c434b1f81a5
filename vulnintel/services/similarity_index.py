"""
Local similarity index over previously seen CVEs.

The whole index lives in memory and is written through to a single JSON
file on every mutation::

    {"metadata": {"updated_at", "count", "min_cvss", "days_back"},
     "entries": [IndexEntry, ...]}

Retrieval runs four cheap passes (exact id, shared CWE, shared product,
same severity) and never touches the network.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

import structlog
from pydantic import ValidationError

from vulnintel.models.records import CanonicalRecord, IndexEntry, RetrievalHit, RetrievalResult
from vulnintel.utils.date_utils import get_current_utc, sort_key

logger = structlog.get_logger(__name__)

TAXONOMY_CAP = 3
ENTITY_CAP = 3
RECENCY_CAP = 2

# Field names written by the older JavaScript index builder
_LEGACY_FIELDS = {
    "published": "published_at",
    "lastModified": "last_modified_at",
    "severity": "severity_label",
    "cvssScore": "severity_score",
    "cvssVector": "vector_string",
    "cweIds": "taxonomy_ids",
    "affectedProducts": "affected_products",
}


class AsyncRWLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer


def _normalize_legacy(raw: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in raw.items():
        if key == "fullText":
            continue
        out[_LEGACY_FIELDS.get(key, key)] = value
    label = out.get("severity_label")
    if isinstance(label, str):
        label = label.upper()
        out["severity_label"] = label if label in {"CRITICAL", "HIGH", "MEDIUM", "LOW", "NONE"} else None
    return out


def _by_severity(entry: IndexEntry):
    return (-(entry.severity_score or 0.0), entry.id)


class SimilarityIndex:
    def __init__(self, path: str):
        self.path = path
        self._entries: Dict[str, IndexEntry] = {}
        self.metadata: Dict[str, Any] = {}
        self._lock = AsyncRWLock()
        self._loaded = False

    # ────────────────────────────────────────────────────────────
    #  Persistence
    # ────────────────────────────────────────────────────────────

    def load(self) -> int:
        """Read the store from disk; a missing or unreadable store yields an empty index."""
        self._entries = {}
        self.metadata = {}
        self._loaded = True
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            logger.info("No similarity index on disk; starting empty", path=self.path)
            return 0
        except (OSError, ValueError) as e:
            logger.warning("Unreadable similarity index; starting empty", path=self.path, error=str(e))
            return 0

        if isinstance(data, list):
            raw_entries, metadata = data, {}
        elif isinstance(data, dict):
            raw_entries = data.get("entries", data.get("vulnerabilities", []))
            metadata = data.get("metadata") or {}
        else:
            logger.warning("Unexpected similarity index layout; starting empty", path=self.path)
            return 0

        skipped = 0
        for raw in raw_entries or []:
            try:
                entry = IndexEntry.model_validate(_normalize_legacy(raw))
            except (ValidationError, AttributeError) as e:
                skipped += 1
                logger.debug("Skipping malformed index entry", error=str(e))
                continue
            self._entries[entry.id] = entry
        self.metadata = dict(metadata)
        logger.info("Loaded similarity index", path=self.path, count=len(self._entries), skipped=skipped)
        return len(self._entries)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _save(self) -> None:
        self.metadata["updated_at"] = get_current_utc().isoformat()
        self.metadata["count"] = len(self._entries)
        document = {
            "metadata": self.metadata,
            "entries": [e.model_dump(mode="json") for e in self._entries.values()],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".index-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ────────────────────────────────────────────────────────────
    #  Mutation
    # ────────────────────────────────────────────────────────────

    async def upsert(self, entry: IndexEntry) -> bool:
        """Insert or replace by id; returns True if the id was new."""
        return bool(await self.upsert_many([entry]))

    async def upsert_many(
        self,
        entries: Iterable[IndexEntry],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Batch upsert with a single write; returns how many ids were new."""
        async with self._lock.write():
            self._ensure_loaded()
            added = 0
            for entry in entries:
                if entry.id not in self._entries:
                    added += 1
                self._entries[entry.id] = entry
            if metadata:
                self.metadata.update(metadata)
            self._save()
        return added

    async def rebuild(
        self,
        entries: Iterable[IndexEntry],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self._lock.write():
            self._loaded = True
            self._entries = {e.id: e for e in entries}
            self.metadata = dict(metadata or {})
            self._save()
            logger.info("Rebuilt similarity index", path=self.path, count=len(self._entries))
        return len(self._entries)

    # ────────────────────────────────────────────────────────────
    #  Read side
    # ────────────────────────────────────────────────────────────

    def get(self, entry_id: str) -> Optional[IndexEntry]:
        self._ensure_loaded()
        return self._entries.get(entry_id.strip().upper())

    def entries(self) -> List[IndexEntry]:
        self._ensure_loaded()
        return list(self._entries.values())

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        self._ensure_loaded()
        return isinstance(entry_id, str) and entry_id.strip().upper() in self._entries

    async def retrieve(self, record: CanonicalRecord, limit: int = 5) -> RetrievalResult:
        async with self._lock.read():
            self._ensure_loaded()
            hits = self._retrieve(record, limit)
        logger.debug(
            "Retrieved similar entries",
            cve_id=record.id,
            hits=[(h.entry.id, h.reason) for h in hits],
        )
        return RetrievalResult(hits=hits)

    def _retrieve(self, record: CanonicalRecord, limit: int) -> List[RetrievalHit]:
        if limit <= 0 or not self._entries:
            return []
        hits: List[RetrievalHit] = []
        seen: Set[str] = set()

        def take(candidates: List[IndexEntry], reason: str, cap: int) -> None:
            taken = 0
            for entry in candidates:
                if len(hits) >= limit or taken >= cap:
                    return
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                hits.append(RetrievalHit(entry=entry, reason=reason))
                taken += 1

        exact = self._entries.get(record.id)
        if exact is not None:
            take([exact], "exact", 1)

        others = [e for e in self._entries.values() if e.id != record.id]

        wanted_cwes = set(record.taxonomy_ids)
        if wanted_cwes:
            overlap = [e for e in others if wanted_cwes.intersection(e.taxonomy_ids)]
            take(sorted(overlap, key=_by_severity), "taxonomy", TAXONOMY_CAP)

        primary = record.primary_product
        if primary:
            needle = primary.lower()
            overlap = [e for e in others if any(needle in ap.lower() for ap in e.affected_products)]
            take(sorted(overlap, key=_by_severity), "entity", ENTITY_CAP)

        if record.severity_label:
            same = [e for e in others if e.severity_label == record.severity_label]
            same.sort(key=lambda e: (sort_key(e.published_at), e.id), reverse=True)
            take(same, "recency", RECENCY_CAP)

        return hits
