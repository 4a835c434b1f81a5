import xml.etree.ElementTree as ET

import pytest

from vulnintel.services.fetchers import parsing

NVD_CVE = {
    "id": "CVE-2024-3094",
    "published": "2024-03-29T17:15:21.150",
    "lastModified": "2024-04-01T10:00:00.000",
    "descriptions": [
        {"lang": "es", "value": "Código malicioso"},
        {"lang": "en", "value": "  Malicious code was discovered in the upstream tarballs of xz.  "},
    ],
    "metrics": {
        "cvssMetricV2": [{"cvssData": {"baseScore": 5.0, "vectorString": "AV:N"}}],
        "cvssMetricV31": [
            {
                "type": "Primary",
                "cvssData": {
                    "baseScore": 10.0,
                    "baseSeverity": "CRITICAL",
                    "vectorString": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:C/C:H/I:H/A:H",
                },
            }
        ],
    },
    "weaknesses": [{"description": [{"lang": "en", "value": "CWE-506"}, {"value": "NVD-CWE-Other"}]}],
    "configurations": [
        {
            "nodes": [
                {
                    "cpeMatch": [
                        {
                            "vulnerable": True,
                            "criteria": "cpe:2.3:a:tukaani:xz:*:*:*:*:*:*:*:*",
                            "versionStartIncluding": "5.6.0",
                            "versionEndIncluding": "5.6.1",
                        },
                        {"vulnerable": False, "criteria": "cpe:2.3:o:linux:kernel:-:*:*:*:*:*:*:*"},
                    ]
                }
            ]
        }
    ],
    "references": [
        {"url": "https://www.openwall.com/lists/oss-security/2024/03/29/4"},
        {"url": "https://www.openwall.com/lists/oss-security/2024/03/29/4"},
    ],
}


@pytest.mark.parametrize(
    "score,label",
    [(9.0, "CRITICAL"), (8.9, "HIGH"), (7.0, "HIGH"), (4.0, "MEDIUM"), (0.1, "LOW"), (0.0, "NONE"), (None, None)],
)
def test_severity_from_score(score, label):
    assert parsing.severity_from_score(score) == label


def test_cve_and_cwe_extraction():
    text = "Fixes cve-2023-4863 and CVE-2023-4863; see CWE-787, cwe-120 and CWE-787 again."
    assert parsing.extract_cve_ids(text) == ["CVE-2023-4863"]
    assert parsing.extract_cwe_ids(text) == ["CWE-787", "CWE-120"]
    assert parsing.is_cve_id(" cve-2021-44228 ")
    assert not parsing.is_cve_id("CVE-21-1")


def test_parse_cpe():
    assert parsing.parse_cpe("cpe:2.3:a:apache:log4j:2.14:*:*:*:*:*:*:*") == ("apache", "log4j")
    assert parsing.parse_cpe("cpe:2.3:a:*:*:*") is None
    assert parsing.parse_cpe("not-a-cpe") is None


def test_parse_nvd_cve_prefers_v31_and_english():
    partial = parsing.parse_nvd_cve(NVD_CVE)

    assert partial.source_name == "nvd"
    assert partial.description == "Malicious code was discovered in the upstream tarballs of xz."
    assert partial.severity_score == 10.0
    assert partial.severity_label == "CRITICAL"
    assert partial.vector_string.startswith("CVSS:3.1/")
    assert partial.taxonomy_ids == ["CWE-506"]
    assert [(e.vendor, e.product, e.version_range) for e in partial.affected_entities] == [
        ("tukaani", "xz", ">=5.6.0,<=5.6.1")
    ]
    assert partial.references == ["https://www.openwall.com/lists/oss-security/2024/03/29/4"]


def test_parse_nvd_cve_v2_label_derived_from_score():
    cve = {"id": "CVE-2010-0001", "metrics": {"cvssMetricV2": [{"cvssData": {"baseScore": 7.5}}]}}
    partial = parsing.parse_nvd_cve(cve)
    assert partial.severity_score == 7.5
    assert partial.severity_label == "HIGH"


def test_parse_nvd_cve_requires_id():
    with pytest.raises(ValueError):
        parsing.parse_nvd_cve({"descriptions": []})


def test_parse_mitre_record():
    record = {
        "cveMetadata": {"cveId": "CVE-2024-0001", "state": "PUBLISHED", "datePublished": "2024-01-02T00:00:00Z"},
        "containers": {
            "cna": {
                "descriptions": [{"lang": "en-US", "value": "Buffer overflow in widget."}],
                "affected": [
                    {"vendor": "Acme", "product": "Widget", "versions": [{"version": "1.2", "status": "affected"}]},
                    {"vendor": "n/a", "product": "n/a"},
                ],
                "problemTypes": [{"descriptions": [{"cweId": "CWE-120", "description": "CWE-120 Classic BO"}]}],
                "references": [{"url": "https://acme.test/advisory"}],
                "metrics": [{"cvssV3_1": {"baseScore": 8.1, "baseSeverity": "HIGH", "vectorString": "CVSS:3.1/X"}}],
            }
        },
    }
    partial = parsing.parse_mitre_record(record)

    assert partial.description == "Buffer overflow in widget."
    assert partial.severity_score == 8.1 and partial.severity_label == "HIGH"
    assert partial.taxonomy_ids == ["CWE-120"]
    assert [(e.vendor, e.product, e.version_range) for e in partial.affected_entities] == [("Acme", "Widget", "1.2")]
    assert partial.published_at == "2024-01-02T00:00:00Z"


def test_parse_mitre_rejected_record_is_empty():
    assert parsing.parse_mitre_record({"cveMetadata": {"state": "REJECTED"}}) is None
    with pytest.raises(ValueError):
        parsing.parse_mitre_record({"containers": {}})


def test_kev_match_is_case_insensitive_and_trimmed():
    catalog = {
        "vulnerabilities": [
            {
                "cveID": " cve-2021-44228 ",
                "vendorProject": "Apache",
                "product": "Log4j2",
                "vulnerabilityName": "Apache Log4j2 RCE",
                "shortDescription": "JNDI <b>lookup</b> RCE",
                "requiredAction": "Apply updates.",
                "dueDate": "2021-12-24",
            }
        ]
    }
    entry = parsing.match_kev_entry(catalog, "CVE-2021-44228")
    partial = parsing.parse_kev_entry(entry)

    assert partial.known_exploited is True
    assert partial.kev_due_date == "2021-12-24"
    assert partial.description == "JNDI lookup RCE"
    assert partial.affected_entities[0].label == "Apache:Log4j2"
    assert parsing.match_kev_entry(catalog, "CVE-2000-0001") is None
    with pytest.raises(ValueError):
        parsing.match_kev_entry({}, "CVE-2021-44228")


def test_parse_exploitdb_csv_matches_codes_and_description():
    text = (
        "id,file,description,date_published,author,type,platform,port,verified,codes\n"
        "50592,exploits/java/50592.py,Apache Log4j 2 - RCE,2021-12-14,x,remote,java,,1,CVE-2021-44228;CVE-2021-45046\n"
        "50000,exploits/php/50000.py,Other bug,2021-01-01,y,webapps,php,,0,CVE-2020-0001\n"
        "50001,exploits/php/50001.py,Log4Shell scanner (CVE-2021-44228),2021-12-20,z,remote,java,,0,\n"
    )
    exploits = parsing.parse_exploitdb_csv(text, "cve-2021-44228")

    assert [x.url for x in exploits] == [
        "https://www.exploit-db.com/exploits/50592",
        "https://www.exploit-db.com/exploits/50001",
    ]
    assert exploits[0].verified is True and exploits[1].verified is False
    with pytest.raises(ValueError):
        parsing.parse_exploitdb_csv("", "CVE-2021-44228")


RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel>
  <item>
    <title>Log4j again</title>
    <link>https://isc.sans.edu/diary/1</link>
    <description>&lt;p&gt;Scanning for CVE-2021-44228 continues&lt;/p&gt;</description>
    <pubDate>Mon, 13 Dec 2021 10:00:00 GMT</pubDate>
  </item>
  <item><title>Unrelated</title><link>https://isc.sans.edu/diary/2</link><description>nothing</description></item>
</channel></rss>"""

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <entry>
    <title>VU#930724: Apache Log4j allows insecure JNDI lookups</title>
    <link rel="alternate" href="https://kb.cert.org/vuls/id/930724"/>
    <summary>Tracked as CVE-2021-44228.</summary>
    <updated>2021-12-15T00:00:00Z</updated>
  </entry>
</feed>"""


def test_parse_feed_rss_and_atom():
    rss_items = parsing.parse_feed(RSS)
    assert len(rss_items) == 2
    assert rss_items[0].summary == "Scanning for CVE-2021-44228 continues"
    assert rss_items[0].published.startswith("2021-12-13T10:00:00")

    atom_items = parsing.parse_feed(ATOM)
    assert atom_items[0].link == "https://kb.cert.org/vuls/id/930724"
    assert atom_items[0].published == "2021-12-15T00:00:00+00:00"

    matching = parsing.items_mentioning(rss_items + atom_items, "CVE-2021-44228")
    assert [i.link for i in matching] == ["https://isc.sans.edu/diary/1", "https://kb.cert.org/vuls/id/930724"]

    partial = parsing.feed_partial(matching, "sans_isc", "SANS ISC")
    assert partial.narrative[0] == "SANS ISC: Scanning for CVE-2021-44228 continues"


def test_parse_feed_rejects_malformed_xml():
    with pytest.raises(ET.ParseError):
        parsing.parse_feed("<rss><channel>")


def test_parse_feed_refuses_entity_declarations():
    bomb = (
        '<?xml version="1.0"?>\n'
        '<!DOCTYPE rss [<!ENTITY a "aaaaaaaaaa"><!ENTITY b "&a;&a;&a;&a;&a;&a;&a;&a;">]>\n'
        "<rss><channel><item><title>&b;</title></item></channel></rss>"
    )
    with pytest.raises(ValueError, match="DTD"):
        parsing.parse_feed(bomb)


def test_parse_feed_refuses_oversized_documents(monkeypatch):
    monkeypatch.setattr(parsing, "MAX_FEED_CHARS", 64)
    with pytest.raises(ValueError, match="too large"):
        parsing.parse_feed(RSS)


def test_parse_vuldb_item():
    item = parsing.FeedItem(
        title="VulDB 250000 - Acme Router - Command Injection (CVE-2024-1111)",
        link="https://vuldb.com/?id.250000",
        summary="Risk Level: High. CVSS Base Score: 7.3. Affected products: Acme Router, Acme Switch.",
        published=None,
    )
    fields = parsing.parse_vuldb_item(item)

    assert fields["vuldb_id"] == "250000"
    assert fields["risk_level"] == "HIGH"
    assert fields["cvss"] == 7.3
    assert fields["products"] == ["Acme Router", "Acme Switch"]
    assert fields["name"] == "Acme Router - Command Injection"


def test_parse_otx_general():
    payload = {
        "pulse_info": {
            "count": 2,
            "pulses": [
                {"id": "abc", "name": "Log4Shell IOCs", "tags": ["log4j"], "references": ["https://blog.test/a"]},
                {"id": "def", "name": "Scanner activity", "references": ["not-a-url"]},
            ],
        }
    }
    partial = parsing.parse_otx_general(payload)

    assert partial.references == [
        "https://otx.alienvault.com/pulse/abc",
        "https://blog.test/a",
        "https://otx.alienvault.com/pulse/def",
    ]
    assert partial.narrative[0].startswith("AlienVault OTX: referenced by 2 threat-intel pulse(s)")
    assert parsing.parse_otx_general({"pulse_info": {"pulses": []}}) is None


def test_parse_epss():
    payload = {"data": [{"cve": "CVE-2021-44228", "epss": "0.97565", "percentile": "0.99996", "date": "2024-05-01"}]}
    partial = parsing.parse_epss(payload, "cve-2021-44228")

    assert partial.exploit_probability == pytest.approx(0.97565)
    assert partial.exploit_percentile == pytest.approx(0.99996)
    assert "97.6%" in partial.narrative[0]
    assert parsing.parse_epss({"data": []}, "CVE-2021-44228") is None
