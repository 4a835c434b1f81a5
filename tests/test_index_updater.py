import pytest

from vulnintel.services.index_updater import IndexUpdater
from vulnintel.services.similarity_index import SimilarityIndex


def nvd_cve(cve_id, score, description="desc", published="2024-05-01T00:00:00.000"):
    return {
        "id": cve_id,
        "published": published,
        "descriptions": [{"lang": "en", "value": description}],
        "metrics": {"cvssMetricV31": [{"cvssData": {"baseScore": score, "baseSeverity": "HIGH"}}]},
        "weaknesses": [{"description": [{"value": "CWE-79"}]}],
    }


class FakeNvd:
    name = "nvd"

    def __init__(self, batches):
        self.batches = list(batches)
        self.calls = []

    async def fetch_recent(self, days_back=30, *, severity=None, limit=100):
        self.calls.append({"days_back": days_back, "limit": limit})
        return self.batches.pop(0)


@pytest.fixture
def index(tmp_path):
    return SimilarityIndex(str(tmp_path / "index.json"))


@pytest.mark.asyncio
async def test_update_filters_by_score_and_tracks_changes(index, settings, metrics_facade):
    nvd = FakeNvd(
        [
            [nvd_cve("CVE-2024-0001", 8.0), nvd_cve("CVE-2024-0002", 4.3), nvd_cve("CVE-2024-0003", 7.5)],
            [nvd_cve("CVE-2024-0001", 8.0), nvd_cve("CVE-2024-0003", 7.5, "revised"), nvd_cve("CVE-2024-0004", 9.0)],
        ]
    )
    updater = IndexUpdater(index, nvd, settings=settings, metrics=metrics_facade)

    first = await updater.update(days_back=7, min_cvss=7.0)
    assert first.to_dict() == {"fetched": 3, "filtered": 1, "added": 2, "updated": 0, "skipped": 0, "total": 2}

    second = await updater.update(days_back=7, min_cvss=7.0)
    assert (second.added, second.updated, second.skipped, second.total) == (1, 1, 1, 3)
    assert index.get("CVE-2024-0003").description == "revised"
    assert index.metadata["min_cvss"] == 7.0
    assert metrics_facade.get_counters()["index_updates"] == {"incremental": 2}


@pytest.mark.asyncio
async def test_force_rebuild_drops_old_entries(index, settings, metrics_facade):
    nvd = FakeNvd([[nvd_cve("CVE-2023-0001", 9.0)], [nvd_cve("CVE-2024-0009", 9.8)]])
    updater = IndexUpdater(index, nvd, settings=settings, metrics=metrics_facade)

    await updater.update()
    summary = await updater.update(force=True)

    assert summary.added == 1 and summary.total == 1
    assert "CVE-2023-0001" not in index
    assert nvd.calls[0]["days_back"] == settings.index_days_back


@pytest.mark.asyncio
async def test_unparseable_entries_are_skipped(index, settings, metrics_facade):
    broken = {"metrics": {"cvssMetricV31": [{"cvssData": {"baseScore": 9.0}}]}}
    nvd = FakeNvd([[broken, nvd_cve("CVE-2024-0005", 9.0)]])
    updater = IndexUpdater(index, nvd, settings=settings, metrics=metrics_facade)

    summary = await updater.update()

    assert summary.added == 1
    assert summary.filtered == 1
