"""
Output sinks for generated write-ups.
"""

from __future__ import annotations

import os
from typing import Optional, Protocol

import structlog

from vulnintel.models.records import CanonicalRecord, GenerationResponse
from vulnintel.utils.date_utils import get_current_utc

logger = structlog.get_logger(__name__)


class OutputSink(Protocol):
    def write(self, text: str, record: CanonicalRecord, response: Optional[GenerationResponse] = None) -> str:
        """Persist ``text`` for ``record``; returns where it went."""
        ...


def _yaml_str(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def front_matter(record: CanonicalRecord, response: Optional[GenerationResponse] = None) -> str:
    lines = [
        "---",
        f"title: {_yaml_str(record.id)}",
        f"date: {get_current_utc().strftime('%Y-%m-%d')}",
        f"cve_id: {record.id}",
    ]
    if record.severity_label:
        lines.append(f"severity: {record.severity_label}")
    if record.severity_score is not None:
        lines.append(f"cvss: {record.severity_score:.1f}")
    if record.taxonomy_ids:
        lines.append(f"cwe: [{', '.join(record.taxonomy_ids)}]")
    lines.append(f"sources: [{', '.join(record.provenance)}]")
    if record.degraded:
        lines.append("degraded: true")
    if response is not None:
        lines.append(f"generator: {_yaml_str(f'{response.backend}/{response.model}')}")
    lines.append("---")
    return "\n".join(lines) + "\n\n"


class MarkdownFileSink:
    """Writes ``<out_dir>/<cve-id-lower>.md``, replacing any previous post."""

    def __init__(self, out_dir: str):
        self.out_dir = out_dir

    def path_for(self, record: CanonicalRecord) -> str:
        return os.path.join(self.out_dir, f"{record.id.lower()}.md")

    def write(self, text: str, record: CanonicalRecord, response: Optional[GenerationResponse] = None) -> str:
        os.makedirs(self.out_dir, exist_ok=True)
        path = self.path_for(record)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(front_matter(record, response))
            fh.write(text.rstrip() + "\n")
        logger.info("Wrote post", path=path, cve_id=record.id, chars=len(text))
        return path
