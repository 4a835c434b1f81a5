"""
Pure, network-free parsing for every source format.

Each function takes an already-fetched payload (dict, CSV text, feed XML)
and returns plain values or a ``PartialRecord``. Malformed input raises
``ValueError``/``KeyError``/``TypeError``/``ET.ParseError``/``csv.Error``;
the fetcher boundary turns those into ``ParseError``.
"""

from __future__ import annotations

import csv
import io
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from vulnintel.models.records import AffectedEntity, ExploitReference, PartialRecord
from vulnintel.utils.date_utils import iso_or_none
from vulnintel.utils.text import sanitize_text

CVE_RE = re.compile(r"CVE-\d{4}-\d{4,}", re.IGNORECASE)
CWE_RE = re.compile(r"CWE-\d+", re.IGNORECASE)
_CVE_EXACT_RE = re.compile(r"^CVE-\d{4}-\d{4,}$")

ATOM_NS = {"a": "http://www.w3.org/2005/Atom"}

NARRATIVE_MAX_LEN = 600

# Limits for remote feed documents
MAX_FEED_CHARS = 5_000_000
_DTD_RE = re.compile(r"<!(?:DOCTYPE|ENTITY)", re.IGNORECASE)

# NVD metric keys in preference order
_NVD_METRIC_KEYS = ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2")


# --------------------------------------------------------------------------- #
#                           Identifiers and severity                          #
# --------------------------------------------------------------------------- #


def normalize_cve_id(value: str) -> str:
    return (value or "").strip().upper()


def is_cve_id(value: str) -> bool:
    return bool(_CVE_EXACT_RE.match(normalize_cve_id(value)))


def severity_from_score(score: Optional[float]) -> Optional[str]:
    """CVSS qualitative rating for a base score (v2 payloads carry no label)."""
    if score is None:
        return None
    if score >= 9.0:
        return "CRITICAL"
    if score >= 7.0:
        return "HIGH"
    if score >= 4.0:
        return "MEDIUM"
    if score >= 0.1:
        return "LOW"
    return "NONE"


def normalize_severity_label(label: Optional[str]) -> Optional[str]:
    if not label:
        return None
    value = label.strip().upper()
    if value in {"CRITICAL", "HIGH", "MEDIUM", "LOW", "NONE"}:
        return value
    if value == "MODERATE":
        return "MEDIUM"
    return None


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


def extract_cwe_ids(text: str) -> List[str]:
    """``CWE-nnn`` identifiers in order of first appearance, upper-cased."""
    return _dedupe(m.group(0).upper() for m in CWE_RE.finditer(text or ""))


def extract_cve_ids(text: str) -> List[str]:
    return _dedupe(m.group(0).upper() for m in CVE_RE.finditer(text or ""))


def mentions_cve(text: str, cve_id: str) -> bool:
    return normalize_cve_id(cve_id) in extract_cve_ids(text)


def parse_cpe(criteria: str) -> Optional[Tuple[str, str]]:
    """(vendor, product) from a CPE 2.3 string, or None if it is not one."""
    parts = (criteria or "").split(":")
    if len(parts) < 5 or parts[0] != "cpe":
        return None
    vendor, product = parts[3], parts[4]
    if not product or product in {"*", "-"}:
        return None
    return (vendor if vendor not in {"*", "-"} else "", product)


def _version_range(match: Dict[str, Any]) -> Optional[str]:
    lower = match.get("versionStartIncluding") or match.get("versionStartExcluding")
    upper_inc = match.get("versionEndIncluding")
    upper_exc = match.get("versionEndExcluding")
    parts = []
    if lower:
        op = ">=" if match.get("versionStartIncluding") else ">"
        parts.append(f"{op}{lower}")
    if upper_inc:
        parts.append(f"<={upper_inc}")
    elif upper_exc:
        parts.append(f"<{upper_exc}")
    return ",".join(parts) or None


def dedupe_entities(entities: Iterable[AffectedEntity]) -> List[AffectedEntity]:
    seen = set()
    out: List[AffectedEntity] = []
    for e in entities:
        if e.key in seen:
            continue
        seen.add(e.key)
        out.append(e)
    return out


# --------------------------------------------------------------------------- #
#                                    NVD                                      #
# --------------------------------------------------------------------------- #


def _nvd_cvss(metrics: Dict[str, Any]) -> Tuple[Optional[float], Optional[str], Optional[str]]:
    for key in _NVD_METRIC_KEYS:
        entries = metrics.get(key) or []
        if not entries:
            continue
        primary = next((m for m in entries if m.get("type") == "Primary"), entries[0])
        data = primary.get("cvssData") or {}
        score = data.get("baseScore")
        if score is None:
            continue
        score = float(score)
        label = data.get("baseSeverity") or primary.get("baseSeverity")
        if key == "cvssMetricV2" or not label:
            label = severity_from_score(score)
        return score, normalize_severity_label(label), data.get("vectorString")
    return None, None, None


def parse_nvd_cve(cve: Dict[str, Any], source_name: str = "nvd") -> PartialRecord:
    """PartialRecord from one ``vulnerabilities[].cve`` object of NVD API 2.0."""
    if not isinstance(cve, dict) or "id" not in cve:
        raise ValueError("NVD CVE object missing 'id'")

    description = next(
        (d.get("value") for d in cve.get("descriptions") or [] if d.get("lang") == "en"),
        None,
    )
    score, label, vector = _nvd_cvss(cve.get("metrics") or {})

    cwe_ids: List[str] = []
    for weakness in cve.get("weaknesses") or []:
        for desc in weakness.get("description") or []:
            cwe_ids.extend(extract_cwe_ids(desc.get("value", "")))

    entities: List[AffectedEntity] = []
    for config in cve.get("configurations") or []:
        for node in config.get("nodes") or []:
            for match in node.get("cpeMatch") or []:
                if match.get("vulnerable") is False:
                    continue
                parsed = parse_cpe(match.get("criteria", ""))
                if parsed:
                    entities.append(
                        AffectedEntity(
                            vendor=parsed[0], product=parsed[1], version_range=_version_range(match)
                        )
                    )

    refs = [r.get("url", "").strip() for r in cve.get("references") or []]

    return PartialRecord(
        source_name=source_name,
        description=description.strip() if description else None,
        severity_score=score,
        severity_label=label,
        vector_string=vector,
        taxonomy_ids=_dedupe(cwe_ids) or None,
        affected_entities=dedupe_entities(entities) or None,
        references=_dedupe(refs) or None,
        published_at=cve.get("published"),
        last_modified_at=cve.get("lastModified"),
    )


def nvd_base_score(cve: Dict[str, Any]) -> float:
    score, _, _ = _nvd_cvss(cve.get("metrics") or {})
    return score or 0.0


# --------------------------------------------------------------------------- #
#                           MITRE (CVE JSON 5 record)                         #
# --------------------------------------------------------------------------- #


def _mitre_metrics(containers: Sequence[Dict[str, Any]]) -> Tuple[Optional[float], Optional[str], Optional[str]]:
    for container in containers:
        for metric in container.get("metrics") or []:
            for key in ("cvssV3_1", "cvssV3_0", "cvssV4_0", "cvssV2_0"):
                data = metric.get(key)
                if data and data.get("baseScore") is not None:
                    score = float(data["baseScore"])
                    label = normalize_severity_label(data.get("baseSeverity")) or severity_from_score(score)
                    return score, label, data.get("vectorString")
    return None, None, None


def parse_mitre_record(record: Dict[str, Any], source_name: str = "mitre") -> Optional[PartialRecord]:
    """PartialRecord from a CVE Services record; None for REJECTED or empty records."""
    meta = record.get("cveMetadata")
    if not isinstance(meta, dict):
        raise ValueError("MITRE record missing 'cveMetadata'")
    if str(meta.get("state", "")).upper() == "REJECTED":
        return None

    containers = record.get("containers") or {}
    cna = containers.get("cna") or {}
    adp = containers.get("adp") or []

    description = next(
        (d.get("value") for d in cna.get("descriptions") or [] if str(d.get("lang", "")).startswith("en")),
        None,
    )

    cwe_ids: List[str] = []
    for container in [cna, *adp]:
        for problem in container.get("problemTypes") or []:
            for desc in problem.get("descriptions") or []:
                cwe_ids.extend(extract_cwe_ids(desc.get("cweId") or desc.get("description", "")))

    entities: List[AffectedEntity] = []
    for item in cna.get("affected") or []:
        product = (item.get("product") or "").strip()
        if not product or product.lower() == "n/a":
            continue
        versions = [
            v.get("version")
            for v in item.get("versions") or []
            if v.get("status") == "affected" and v.get("version") not in (None, "", "n/a")
        ]
        vendor = (item.get("vendor") or "").strip()
        entities.append(
            AffectedEntity(
                vendor="" if vendor.lower() == "n/a" else vendor,
                product=product,
                version_range=",".join(versions) or None,
            )
        )

    refs = [r.get("url", "").strip() for r in cna.get("references") or []]
    score, label, vector = _mitre_metrics([cna, *adp])

    partial = PartialRecord(
        source_name=source_name,
        description=description.strip() if description else None,
        severity_score=score,
        severity_label=label,
        vector_string=vector,
        taxonomy_ids=_dedupe(cwe_ids) or None,
        affected_entities=dedupe_entities(entities) or None,
        references=_dedupe(refs) or None,
        published_at=meta.get("datePublished"),
        last_modified_at=meta.get("dateUpdated"),
    )
    return partial if partial.has_data() else None


# --------------------------------------------------------------------------- #
#                                 CISA KEV                                    #
# --------------------------------------------------------------------------- #


def match_kev_entry(catalog: Dict[str, Any], cve_id: str) -> Optional[Dict[str, Any]]:
    entries = catalog.get("vulnerabilities")
    if not isinstance(entries, list):
        raise ValueError("KEV catalog missing 'vulnerabilities' list")
    wanted = normalize_cve_id(cve_id)
    for entry in entries:
        if normalize_cve_id(entry.get("cveID", "")) == wanted:
            return entry
    return None


def parse_kev_entry(entry: Dict[str, Any], source_name: str = "cisa_kev") -> PartialRecord:
    vendor = (entry.get("vendorProject") or "").strip()
    product = (entry.get("product") or "").strip()
    narrative = []
    name = entry.get("vulnerabilityName")
    if name:
        narrative.append(f"CISA KEV: {name}")
    if str(entry.get("knownRansomwareCampaignUse", "")).lower() == "known":
        narrative.append("CISA KEV: known to be used in ransomware campaigns")
    cwes = entry.get("cwes") or []
    return PartialRecord(
        source_name=source_name,
        description=sanitize_text(entry.get("shortDescription") or "") or None,
        known_exploited=True,
        kev_due_date=entry.get("dueDate"),
        kev_required_action=entry.get("requiredAction"),
        taxonomy_ids=extract_cwe_ids(" ".join(cwes)) or None,
        affected_entities=[AffectedEntity(vendor=vendor, product=product)] if product else None,
        narrative=narrative or None,
        references=[
            "https://www.cisa.gov/known-exploited-vulnerabilities-catalog"
        ],
    )


# --------------------------------------------------------------------------- #
#                                 ExploitDB                                   #
# --------------------------------------------------------------------------- #

EXPLOITDB_URL = "https://www.exploit-db.com/exploits/{id}"


def parse_exploitdb_csv(text: str, cve_id: str) -> List[ExploitReference]:
    """Exploit rows whose codes or description mention ``cve_id``."""
    wanted = normalize_cve_id(cve_id)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames or "id" not in reader.fieldnames:
        raise ValueError("ExploitDB CSV missing header row")
    out: List[ExploitReference] = []
    for row in reader:
        haystack = " ".join(
            row.get(col) or "" for col in ("codes", "description", "aliases", "vulnerable_app")
        )
        if wanted not in extract_cve_ids(haystack):
            continue
        exploit_id = (row.get("id") or "").strip()
        if not exploit_id:
            continue
        verified = (row.get("verified") or "").strip()
        out.append(
            ExploitReference(
                source="exploitdb",
                url=EXPLOITDB_URL.format(id=exploit_id),
                title=sanitize_text(row.get("description") or "") or None,
                published_at=row.get("date_published") or row.get("date") or None,
                verified=(verified == "1") if verified else None,
            )
        )
    return out


# --------------------------------------------------------------------------- #
#                               RSS / Atom feeds                              #
# --------------------------------------------------------------------------- #


@dataclass
class FeedItem:
    title: str
    link: str
    summary: str
    published: Optional[str]

    @property
    def text(self) -> str:
        return f"{self.title} {self.summary} {self.link}"


def parse_feed(xml_text: str) -> List[FeedItem]:
    """Items from an RSS 2.0 or Atom document, in document order."""
    if len(xml_text) > MAX_FEED_CHARS:
        raise ValueError(f"feed document too large ({len(xml_text)} chars)")
    if _DTD_RE.search(xml_text):
        raise ValueError("feed document declares a DTD or entity")
    root = ET.fromstring(xml_text)
    items: List[FeedItem] = []

    if root.tag.endswith("feed"):
        for entry in root.findall("a:entry", ATOM_NS):
            link_el = entry.find("a:link[@rel='alternate']", ATOM_NS)
            if link_el is None:
                link_el = entry.find("a:link", ATOM_NS)
            link = link_el.get("href", "") if link_el is not None else ""
            summary = (
                entry.findtext("a:summary", default="", namespaces=ATOM_NS)
                or entry.findtext("a:content", default="", namespaces=ATOM_NS)
            )
            items.append(
                FeedItem(
                    title=sanitize_text(entry.findtext("a:title", default="", namespaces=ATOM_NS)),
                    link=(link or entry.findtext("a:id", default="", namespaces=ATOM_NS) or "").strip(),
                    summary=sanitize_text(summary),
                    published=iso_or_none(
                        entry.findtext("a:published", default="", namespaces=ATOM_NS)
                        or entry.findtext("a:updated", default="", namespaces=ATOM_NS)
                    ),
                )
            )
        return items

    for item in root.iter("item"):
        items.append(
            FeedItem(
                title=sanitize_text(item.findtext("title") or ""),
                link=(item.findtext("link") or item.findtext("guid") or "").strip(),
                summary=sanitize_text(item.findtext("description") or ""),
                published=iso_or_none(item.findtext("pubDate") or ""),
            )
        )
    return items


def items_mentioning(items: Iterable[FeedItem], cve_id: str) -> List[FeedItem]:
    return [i for i in items if mentions_cve(i.text, cve_id)]


def feed_partial(items: Sequence[FeedItem], source_name: str, label: str) -> Optional[PartialRecord]:
    """Enrichment partial for feed items already filtered to one CVE."""
    if not items:
        return None
    narrative = []
    for item in items:
        text = item.summary or item.title
        if text:
            narrative.append(f"{label}: {sanitize_text(text, max_len=NARRATIVE_MAX_LEN)}")
    return PartialRecord(
        source_name=source_name,
        references=_dedupe(i.link for i in items) or None,
        narrative=_dedupe(narrative) or None,
    )


# --------------------------------------------------------------------------- #
#                                   VulDB                                     #
# --------------------------------------------------------------------------- #

_VULDB_ID_RES = (re.compile(r"vuldb-id-(\d+)"), re.compile(r"id=(\d+)"), re.compile(r"/\?id\.(\d+)"))
_VULDB_RISK_RE = re.compile(r"Risk Level:\s*(Critical|High|Medium|Low)", re.IGNORECASE)
_VULDB_CVSS_RE = re.compile(r"CVSS Base Score:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_VULDB_PRODUCTS_RE = re.compile(r"Affected products?:([^.]*)", re.IGNORECASE)
_VULDB_TITLE_RE = re.compile(r".*?-\s*(.*?)\s*(?:\(|$)")


def parse_vuldb_item(item: FeedItem) -> Dict[str, Any]:
    """Regex-scraped fields of one VulDB RSS item."""
    vuldb_id = None
    for pattern in _VULDB_ID_RES:
        m = pattern.search(item.link) or pattern.search(item.summary)
        if m:
            vuldb_id = m.group(1)
            break

    risk = _VULDB_RISK_RE.search(item.summary)
    cvss = _VULDB_CVSS_RE.search(item.summary)
    products_m = _VULDB_PRODUCTS_RE.search(item.summary)
    products = (
        [p.strip() for p in products_m.group(1).split(",") if p.strip()] if products_m else []
    )
    title_m = _VULDB_TITLE_RE.match(item.title)
    name = title_m.group(1).strip() if title_m and title_m.group(1).strip() else item.title

    score = float(cvss.group(1)) if cvss else None
    if score is not None and not 0.0 <= score <= 10.0:
        score = None
    return {
        "vuldb_id": vuldb_id,
        "name": name,
        "risk_level": normalize_severity_label(risk.group(1)) if risk else None,
        "cvss": score,
        "products": products,
        "link": item.link,
    }


def parse_vuldb_items(items: Sequence[FeedItem], source_name: str = "vuldb") -> Optional[PartialRecord]:
    if not items:
        return None
    parsed = [parse_vuldb_item(i) for i in items]
    first = parsed[0]
    entities = [AffectedEntity(product=p) for fields in parsed for p in fields["products"]]
    return PartialRecord(
        source_name=source_name,
        severity_label=first["risk_level"] or severity_from_score(first["cvss"]),
        severity_score=first["cvss"],
        affected_entities=dedupe_entities(entities) or None,
        references=_dedupe(f["link"] for f in parsed) or None,
        narrative=_dedupe(f"VulDB: {f['name']}" for f in parsed if f["name"]) or None,
    )


# --------------------------------------------------------------------------- #
#                              AlienVault OTX                                 #
# --------------------------------------------------------------------------- #

OTX_PULSE_URL = "https://otx.alienvault.com/pulse/{id}"


def parse_otx_general(payload: Dict[str, Any], source_name: str = "otx", max_pulses: int = 5) -> Optional[PartialRecord]:
    pulse_info = payload.get("pulse_info")
    if pulse_info is None:
        raise ValueError("OTX payload missing 'pulse_info'")
    pulses = pulse_info.get("pulses") or []
    if not pulses:
        return None

    refs: List[str] = []
    names: List[str] = []
    tags: List[str] = []
    for pulse in pulses[:max_pulses]:
        if pulse.get("id"):
            refs.append(OTX_PULSE_URL.format(id=pulse["id"]))
        if pulse.get("name"):
            names.append(sanitize_text(pulse["name"]))
        tags.extend(str(t) for t in pulse.get("tags") or [])
        refs.extend(str(r).strip() for r in pulse.get("references") or [] if str(r).startswith("http"))

    summary = f"AlienVault OTX: referenced by {len(pulses)} threat-intel pulse(s)"
    if names:
        summary += f" ({'; '.join(names[:3])})"
    narrative = [summary]
    if tags:
        narrative.append(f"AlienVault OTX tags: {', '.join(_dedupe(tags)[:10])}")

    cwe_text = " ".join(str(c) for c in payload.get("cwe") or [])
    return PartialRecord(
        source_name=source_name,
        references=_dedupe(refs) or None,
        narrative=narrative,
        taxonomy_ids=extract_cwe_ids(cwe_text) or None,
    )


# --------------------------------------------------------------------------- #
#                                   EPSS                                      #
# --------------------------------------------------------------------------- #


def parse_epss(payload: Dict[str, Any], cve_id: str, source_name: str = "epss") -> Optional[PartialRecord]:
    rows = payload.get("data")
    if not isinstance(rows, list):
        raise ValueError("EPSS payload missing 'data' list")
    wanted = normalize_cve_id(cve_id)
    for row in rows:
        if normalize_cve_id(row.get("cve", "")) != wanted:
            continue
        probability = float(row["epss"])
        percentile = float(row["percentile"]) if row.get("percentile") is not None else None
        return PartialRecord(
            source_name=source_name,
            exploit_probability=probability,
            exploit_percentile=percentile,
            narrative=[
                f"EPSS: {probability:.1%} probability of exploitation in the next 30 days"
                + (f" (as of {row['date']})" if row.get("date") else "")
            ],
        )
    return None
