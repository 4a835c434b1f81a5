"""
Prompt builders for the two generation phases.

Extraction asks a cheap model to condense the fact sheet into a technical
digest. Synthesis asks the premium model for the full write-up from the
digest plus whatever related CVEs retrieval produced.
"""

from __future__ import annotations

from typing import Optional

from vulnintel.models.records import CanonicalRecord, RetrievalResult
from vulnintel.utils.token_budget import trim_text_to_tokens

# Facts can carry long narrative from enrichment feeds
MAX_FACT_TOKENS = 6000
MAX_CONTEXT_ENTRY_CHARS = 400

EXTRACT_TEMPLATE = """Analyze the following vulnerability data and produce a concise technical digest.

{facts}

Cover, as bullet points:
1. Vulnerability class and root cause
2. Attack vector and prerequisites
3. Affected components and versions
4. Exploitation status (public exploits, known exploitation, EPSS)
5. Available fixes and workarounds

Use only the facts above. Say "unknown" where the data is silent."""

SYNTHESIZE_TEMPLATE = """Write a comprehensive technical blog post about {cve_id}.

## Technical digest
{digest}
{context}
Structure the post with these sections:
1. Executive Summary
2. Vulnerability Snapshot (as a Markdown table)
3. Technical Deep Dive
4. Impact Assessment
5. Mitigation and Remediation
6. Conclusion

Format the post in Markdown. Be accurate and specific; it is written for security professionals.{extra}"""


def build_extract_prompt(record: CanonicalRecord) -> str:
    return EXTRACT_TEMPLATE.format(facts=trim_text_to_tokens(record.to_facts(), MAX_FACT_TOKENS))


def format_context(context: RetrievalResult) -> str:
    """Related-CVE block for the synthesis prompt; empty when nothing was retrieved."""
    if not context.hits:
        return ""
    lines = ["", "## Related vulnerabilities"]
    for hit in context.hits:
        entry = hit.entry
        severity = entry.severity_label or "UNKNOWN"
        score = f" {entry.severity_score:.1f}" if entry.severity_score is not None else ""
        description = (entry.description or "").strip()
        if len(description) > MAX_CONTEXT_ENTRY_CHARS:
            description = description[: MAX_CONTEXT_ENTRY_CHARS - 3] + "..."
        lines.append(f"- {entry.id} [{severity}{score}] ({hit.reason}): {description}")
        if entry.taxonomy_ids:
            lines.append(f"  Weaknesses: {', '.join(entry.taxonomy_ids)}")
    lines.append(
        "Reference related vulnerabilities only where they share a weakness or product."
    )
    lines.append("")
    return "\n".join(lines)


def build_synthesize_prompt(
    record: CanonicalRecord,
    digest: str,
    context: RetrievalResult,
    extra: Optional[str] = None,
) -> str:
    return SYNTHESIZE_TEMPLATE.format(
        cve_id=record.id,
        digest=digest.strip(),
        context=format_context(context),
        extra=f"\n\nAdditional instructions:\n{extra.strip()}" if extra and extra.strip() else "",
    )
