import asyncio

import pytest

from vulnintel.core.errors import FetchError
from vulnintel.models.records import AffectedEntity, PartialRecord
from vulnintel.services.aggregator import Aggregator, merge_partials, minimal_record

from fakes import StaticFetcher

CVE = "CVE-2024-21413"


def partial(source, **fields):
    return PartialRecord(source_name=source, **fields)


class ConcurrencyProbe(StaticFetcher):
    active = 0
    peak = 0

    async def _fetch(self, cve_id):
        ConcurrencyProbe.active += 1
        ConcurrencyProbe.peak = max(ConcurrencyProbe.peak, ConcurrencyProbe.active)
        try:
            await asyncio.sleep(0.01)
        finally:
            ConcurrencyProbe.active -= 1
        return self._record


def test_merge_prefers_earlier_partials_for_scalars():
    record = merge_partials(
        CVE,
        [
            partial("nvd", severity_score=9.8, references=["https://a.test/1"]),
            partial("mitre", description="Outlook RCE", severity_score=7.0, taxonomy_ids=["cwe-20"]),
            partial(
                "epss",
                exploit_probability=0.42,
                taxonomy_ids=["CWE-20", "CWE-94"],
                references=[" https://a.test/1 ", "https://b.test/2"],
            ),
        ],
    )

    assert record.severity_score == 9.8
    assert record.severity_label == "CRITICAL"
    assert record.description == "Outlook RCE"
    assert record.exploit_probability == 0.42
    assert record.taxonomy_ids == ("CWE-20", "CWE-94")
    assert record.references == ("https://a.test/1", "https://b.test/2")
    assert record.provenance == ("nvd", "mitre", "epss")
    assert not record.degraded


def test_merge_caps_references_in_first_seen_order():
    refs = [f"https://ref.test/{i}" for i in range(15)]
    record = merge_partials(CVE, [partial("nvd", references=refs)], max_references=10)
    assert record.references == tuple(refs[:10])


def test_merge_is_deterministic():
    partials = [
        partial("nvd", severity_score=8.8, taxonomy_ids=["CWE-20"], references=["https://a.test/1"]),
        partial(
            "mitre",
            description="Outlook RCE",
            affected_entities=[AffectedEntity(vendor="microsoft", product="outlook")],
            references=["https://b.test/2"],
        ),
        partial("otx", narrative=["Seen in phishing campaigns"], taxonomy_ids=["CWE-94"]),
    ]

    first = merge_partials(CVE, partials)
    second = merge_partials(CVE, list(partials))

    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


def test_reference_cap_keeps_primary_references_first():
    primary_refs = [f"https://nvd.test/{i}" for i in range(6)]
    enrichment_refs = [f"https://feed.test/{i}" for i in range(6)]

    record = merge_partials(
        CVE,
        [partial("nvd", references=primary_refs), partial("zdi", references=enrichment_refs)],
        max_references=8,
    )

    assert record.references == tuple(primary_refs + enrichment_refs[:2])


def test_merge_dedupes_entities_case_insensitively():
    record = merge_partials(
        CVE,
        [
            partial("nvd", affected_entities=[AffectedEntity(vendor="Microsoft", product="Outlook")]),
            partial("cisa_kev", affected_entities=[AffectedEntity(vendor="microsoft", product="outlook ")]),
        ],
    )
    assert len(record.affected_entities) == 1
    assert record.primary_product == "Outlook"


def test_merge_of_empty_partials_is_minimal():
    record = merge_partials(CVE, [partial("nvd")])
    assert record.provenance == ("minimal",)
    assert record.degraded
    assert record == minimal_record(CVE)


@pytest.mark.asyncio
async def test_all_sources_failing_still_yields_a_record(settings, metrics_facade):
    fetchers = [
        StaticFetcher("nvd", "primary", error=FetchError("boom", status=500), settings=settings),
        StaticFetcher("mitre", "secondary", error=FetchError("down"), settings=settings),
        StaticFetcher("epss", "enrichment", error=RuntimeError("bug"), settings=settings),
    ]
    aggregator = Aggregator(fetchers, settings=settings, metrics=metrics_facade)

    report = await aggregator.collect(CVE.lower())

    assert report.record.id == CVE
    assert report.record.provenance == ("minimal",)
    assert report.record.degraded
    assert CVE in report.record.description
    assert sorted(report.failed) == ["epss", "mitre", "nvd"]
    counters = metrics_facade.get_counters()
    assert counters["minimal_fallbacks"] == {"": 1}
    assert counters["source_failures"] == {"nvd": 1, "mitre": 1, "epss": 1}


@pytest.mark.asyncio
async def test_secondary_and_surviving_enrichment_when_primary_fails(settings, metrics_facade):
    fetchers = [
        StaticFetcher("nvd", "primary", error=FetchError("HTTP 503", status=503), settings=settings),
        StaticFetcher(
            "mitre",
            "secondary",
            record=partial(
                "mitre",
                description="From MITRE",
                references=["https://msrc.test/CVE-2024-21413", "https://shared.test/advisory"],
            ),
            settings=settings,
        ),
        StaticFetcher(
            "cisa_kev",
            "enrichment",
            record=partial(
                "cisa_kev",
                known_exploited=True,
                references=["https://shared.test/advisory", "https://cisa.test/kev"],
            ),
            settings=settings,
        ),
        StaticFetcher("otx", "enrichment", record=partial("otx", narrative=["late"]), delay=5.0, settings=settings),
    ]
    aggregator = Aggregator(fetchers, settings=settings, metrics=metrics_facade)

    report = await aggregator.collect(CVE, deadline=0.2)

    assert report.record.provenance == ("mitre", "cisa_kev")
    assert report.record.description == "From MITRE"
    assert report.record.known_exploited is True
    assert report.record.references == (
        "https://msrc.test/CVE-2024-21413",
        "https://shared.test/advisory",
        "https://cisa.test/kev",
    )
    assert not report.record.degraded
    assert report.timed_out == ["otx"]
    assert report.summary()["sources"] == {
        "nvd": "error",
        "mitre": "ok",
        "cisa_kev": "ok",
        "otx": "timeout",
    }


@pytest.mark.asyncio
async def test_two_enrichment_sources_survive_while_a_third_times_out(settings, metrics_facade):
    fetchers = [
        StaticFetcher("nvd", "primary", settings=settings),
        StaticFetcher(
            "mitre",
            "secondary",
            record=partial("mitre", description="From MITRE", references=["https://mitre.test/1"]),
            settings=settings,
        ),
        StaticFetcher(
            "exploitdb",
            "enrichment",
            record=partial("exploitdb", references=["https://edb.test/51234"]),
            delay=0.02,
            settings=settings,
        ),
        StaticFetcher(
            "otx", "enrichment", record=partial("otx", references=["https://otx.test/late"]), delay=5.0, settings=settings
        ),
        StaticFetcher(
            "cisa_kev",
            "enrichment",
            record=partial("cisa_kev", known_exploited=True, references=["https://cisa.test/kev"]),
            settings=settings,
        ),
    ]
    aggregator = Aggregator(fetchers, settings=settings, metrics=metrics_facade)

    report = await aggregator.collect(CVE, deadline=0.2)

    assert report.record.provenance == ("mitre", "exploitdb", "cisa_kev")
    assert report.record.references == (
        "https://mitre.test/1",
        "https://edb.test/51234",
        "https://cisa.test/kev",
    )
    assert "https://otx.test/late" not in report.record.references
    assert report.timed_out == ["otx"]


@pytest.mark.asyncio
async def test_tier_order_beats_completion_order(settings, metrics_facade):
    fetchers = [
        StaticFetcher(
            "mitre", "secondary", record=partial("mitre", severity_score=9.1), delay=0.05, settings=settings
        ),
        StaticFetcher("vuldb", "enrichment", record=partial("vuldb", severity_score=5.0), settings=settings),
    ]
    aggregator = Aggregator(fetchers, settings=settings, metrics=metrics_facade)

    record = await aggregator.aggregate(CVE)

    assert record.severity_score == 9.1
    assert record.provenance == ("mitre", "vuldb")


@pytest.mark.asyncio
async def test_enrichment_only_data_is_folded_after_minimal(settings, metrics_facade):
    fetchers = [
        StaticFetcher("nvd", "primary", settings=settings),
        StaticFetcher("epss", "enrichment", record=partial("epss", exploit_probability=0.1), settings=settings),
    ]
    aggregator = Aggregator(fetchers, settings=settings, metrics=metrics_facade)

    record = await aggregator.aggregate(CVE)

    assert record.provenance == ("minimal", "epss")
    assert record.degraded
    assert record.exploit_probability == 0.1


@pytest.mark.asyncio
async def test_exhausted_deadline_skips_every_source(settings, metrics_facade):
    nvd = StaticFetcher("nvd", "primary", record=partial("nvd", description="x"), settings=settings)
    mitre = StaticFetcher("mitre", "secondary", record=partial("mitre", description="y"), settings=settings)
    aggregator = Aggregator([nvd, mitre], settings=settings, metrics=metrics_facade)

    report = await aggregator.collect(CVE, deadline=0)

    assert nvd.calls == 0 and mitre.calls == 0
    assert report.record.provenance == ("minimal",)
    assert sorted(report.timed_out) == ["mitre", "nvd"]


@pytest.mark.asyncio
async def test_fan_out_respects_concurrency_limit(settings, metrics_facade):
    ConcurrencyProbe.active = ConcurrencyProbe.peak = 0
    fetchers = [
        ConcurrencyProbe(f"feed{i}", "enrichment", record=partial(f"feed{i}", narrative=[f"n{i}"]), settings=settings)
        for i in range(4)
    ]
    aggregator = Aggregator(
        fetchers, settings=settings.with_overrides(max_concurrency=2), metrics=metrics_facade
    )

    record = await aggregator.aggregate(CVE)

    assert ConcurrencyProbe.peak == 2
    assert record.narrative == ("n0", "n1", "n2", "n3")
