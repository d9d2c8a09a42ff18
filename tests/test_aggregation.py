"""
tests/test_aggregation.py — End-to-end tests for the aggregation driver.

Runs aggregate() over an in-memory six-country fixture and checks record
construction, grouping and sorting, category derivation, roll-up
statistics, cross-crisis consistency and determinism of the snapshot hash.

Requires: pytest, pydantic
"""

from __future__ import annotations

import dataclasses

import pytest

from crisis_backend.aggregate import (
    aggregate,
    build_country_profiles,
    derive_categories,
    group_crises,
    sort_crisis_countries,
)
from crisis_backend.geo import CountryReference
from crisis_backend.indices import with_indices
from crisis_backend.models import CountryCrisisRecord
from crisis_backend.sources import (
    AllocationRow,
    FundingRow,
    SeverityRow,
    SourceUnavailableError,
    StaticDataSources,
)

M = 1_000_000.0

NAMES = {
    "AFG": "Afghanistan",
    "HTI": "Haiti",
    "SDN": "Sudan",
    "SOM": "Somalia",
    "SSD": "South Sudan",
    "YEM": "Yemen",
}


def _geo() -> CountryReference:
    geo = CountryReference()
    for code, name in NAMES.items():
        geo.add(code, name)
    return geo


def _sev(crisis_id, crisis_name, iso3, severity, drivers="", category=""):
    return SeverityRow(
        crisis_id=crisis_id,
        crisis_name=crisis_name,
        country_name=iso3.lower(),
        iso3=iso3,
        drivers=drivers,
        severity_index=severity,
        severity_category=category,
    )


def make_sources(**overrides) -> StaticDataSources:
    fields = dict(
        geo=_geo(),
        severity=[
            _sev("SDN001", "Sudan conflict", "SDN", 4.6, "Conflict", "Very High"),
            _sev("SDN001", "Sudan conflict", "SSD", 3.9, "Conflict"),
            _sev("AFG001", "Afghanistan complex crisis", "AFG", 4.2, "Economic; Drought"),
            _sev("HTI001", "Haiti", "HTI", 3.5, "Gang violence"),
            _sev("YEM001", "Yemen", "YEM", 4.5, "Conflict"),
            _sev("SOM001", "Somalia", "SOM", 4.0, "Drought"),
            _sev("REG001", "Regional x", "SDN", 3.0, "Misc tokens; Other"),
            _sev("SDN001", "Sudan conflict", "SDN", 2.0, "duplicate"),
            _sev("BAD001", "Bad", "HTI", 7.0),
        ],
        funding=[
            FundingRow("SDN", "Sudan HRP", 2025, 1000 * M, 100 * M),
            FundingRow("SDN", "", 2025, 0.0, 50 * M),
            FundingRow("SSD", "South Sudan HRP", 2025, 500 * M, 400 * M),
            FundingRow("AFG", "Afghanistan HRP", 2025, 800 * M, 200 * M),
            FundingRow("HTI", "Haiti HRP", 2025, 300 * M, 30 * M),
            FundingRow("YEM", "Yemen HRP", 2025, 2000 * M, 1000 * M),
            FundingRow("YEM", "Yemen HRP", 2024, 9999 * M, 0.0),
        ],
        allocations=[
            AllocationRow(2025, "Sudan", "Health", 5 * M, 1000, 500),
            AllocationRow(2024, "Sudan", "Health", 7 * M, 1000, 500),
        ],
        target_year=2025,
    )
    fields.update(overrides)
    return StaticDataSources(**fields)


@pytest.fixture(scope="module")
def snapshot():
    return aggregate(make_sources())


def _records(snapshot, iso3):
    return [r for c in snapshot.crises for r in c.countries if r.country_code == iso3]


# ---------------------------------------------------------------------------
# Record construction
# ---------------------------------------------------------------------------

class TestRecordConstruction:

    def test_duplicate_crisis_country_keeps_first(self, snapshot):
        sdn = snapshot.crisis("SDN001")
        entries = [r for r in sdn.countries if r.country_code == "SDN"]
        assert len(entries) == 1
        assert entries[0].severity_index == 4.6

    def test_invalid_severity_rejected(self, snapshot):
        assert snapshot.crisis("BAD001") is None

    def test_joined_fields(self, snapshot):
        sdn = _records(snapshot, "SDN")[0]
        assert sdn.country_name == "Sudan"
        assert sdn.funding_requirements == 1000 * M
        assert sdn.funding_received == 100 * M
        assert sdn.off_appeal_funding == 50 * M
        assert sdn.pooled_fund_allocations == 5 * M
        assert sdn.targeted_population == 1000

    def test_no_funding_data(self, snapshot):
        som = _records(snapshot, "SOM")[0]
        assert som.funding_requirements == 0.0
        assert som.indices.percent_funded is None
        assert som.indices.neglect_index == 0.0

    def test_category_derived(self, snapshot):
        ssd = _records(snapshot, "SSD")[0]
        assert ssd.severity_category == "High"


# ---------------------------------------------------------------------------
# Grouping and sorting
# ---------------------------------------------------------------------------

class TestGrouping:

    def test_crises_sorted_by_name(self, snapshot):
        assert [c.crisis_name for c in snapshot.crises] == [
            "Afghanistan complex crisis", "Haiti", "Regional x",
            "Somalia", "Sudan conflict", "Yemen",
        ]

    def test_countries_sorted_by_neglect_desc(self, snapshot):
        codes = [r.country_code for r in snapshot.crisis("SDN001").countries]
        assert codes == ["SDN", "SSD"]

    def test_sort_absent_last_then_iso3(self):
        base = with_indices(CountryCrisisRecord(country_code="BBB", crisis_id="C", severity_index=1))
        records = [
            base.model_copy(update={"country_code": "CCC", "indices": base.indices.model_copy(update={"neglect_index": None})}),
            base.model_copy(update={"country_code": "BBB", "indices": base.indices.model_copy(update={"neglect_index": 1.0})}),
            base.model_copy(update={"country_code": "AAA", "indices": base.indices.model_copy(update={"neglect_index": 1.0})}),
            base.model_copy(update={"country_code": "DDD", "indices": base.indices.model_copy(update={"neglect_index": 2.0})}),
        ]
        assert [r.country_code for r in sort_crisis_countries(records)] == ["DDD", "AAA", "BBB", "CCC"]

    def test_categories(self, snapshot):
        assert snapshot.crisis("SDN001").categories == ("Conflict",)
        assert snapshot.crisis("AFG001").categories == ("Drought", "Economic Crisis")
        assert snapshot.crisis("HTI001").categories == ("Conflict",)

    def test_category_fallback_to_driver_tokens(self, snapshot):
        assert snapshot.crisis("REG001").categories == ("Misc tokens", "Other")

    def test_derive_categories_empty(self):
        assert derive_categories("", []) == ()


# ---------------------------------------------------------------------------
# Anomalies across crises
# ---------------------------------------------------------------------------

class TestCrossCrisisAnomalies:

    def test_duplicate_country_identical_anomalies(self, snapshot):
        a, b = _records(snapshot, "SDN")
        assert a.crisis_id != b.crisis_id
        assert a.anomalies == b.anomalies
        assert [x.metric for x in a.anomalies] == ["severityFundingMismatch"]

    def test_lowest_percent_funded_flagged(self, snapshot):
        hti = _records(snapshot, "HTI")[0]
        assert [(x.metric, x.severity) for x in hti.anomalies] == [("percentFunded", "critical")]

    def test_profile_carries_anomalies(self, snapshot):
        assert snapshot.countries["HTI"].anomalies == _records(snapshot, "HTI")[0].anomalies


# ---------------------------------------------------------------------------
# Roll-up and profiles
# ---------------------------------------------------------------------------

class TestGlobalStats:

    def test_totals(self, snapshot):
        s = snapshot.stats
        assert s.total_requirements == 4600 * M
        assert s.total_funding == 1730 * M
        assert s.total_off_appeal_funding == 50 * M
        assert s.total_cbpf_allocations == 5 * M
        assert s.percent_funded == round(1730 / 4600 * 100, 8)

    def test_counts(self, snapshot):
        s = snapshot.stats
        assert s.countries_in_crisis == 6
        assert s.active_crisis_count == 6
        assert s.critical_anomaly_count == 2
        assert s.warning_anomaly_count == 0

    def test_zero_requirements_guarded(self):
        snap = aggregate(make_sources(funding=[]))
        assert snap.stats.total_requirements == 0.0
        assert snap.stats.percent_funded is None


class TestProfiles:

    def test_highest_severity_entry(self, snapshot):
        sdn = snapshot.countries["SDN"]
        assert sdn.severity_index == 4.6
        assert sdn.severity_category == "Very High"
        assert sdn.crisis_ids == ("REG001", "SDN001")
        assert sdn.funding.off_appeal_funding == 50 * M
        assert sdn.allocation.total_allocations == 5 * M

    def test_keys_sorted(self, snapshot):
        assert list(snapshot.countries) == sorted(NAMES)

    def test_helper_without_funding(self):
        r = with_indices(CountryCrisisRecord(country_code="SOM", crisis_id="S", severity_index=4))
        profiles = build_country_profiles([r], {}, {})
        assert profiles["SOM"].funding is None
        assert profiles["SOM"].crisis_ids == ("S",)


# ---------------------------------------------------------------------------
# Determinism and failure
# ---------------------------------------------------------------------------

class TestDeterminism:

    def test_idempotent(self, snapshot):
        again = aggregate(make_sources())
        assert again == snapshot
        assert again.snapshot_hash == snapshot.snapshot_hash
        assert len(snapshot.snapshot_hash) == 64

    def test_input_change_changes_hash(self, snapshot):
        sources = make_sources()
        sources.funding[0] = dataclasses.replace(sources.funding[0], funding=101 * M)
        assert aggregate(sources).snapshot_hash != snapshot.snapshot_hash

    def test_group_order_independent_of_input_order(self, snapshot):
        records = [r for c in snapshot.crises for r in c.countries]
        assert group_crises(list(reversed(records))) == snapshot.crises

    def test_year_mismatch_rejected(self):
        with pytest.raises(ValueError):
            aggregate(make_sources(), target_year=2024)


class TestFailurePropagation:

    def test_collaborator_failure_propagates(self):
        class Broken(StaticDataSources):
            def funding_rows(self):
                raise SourceUnavailableError("fts_requirements_funding.csv missing")

        with pytest.raises(SourceUnavailableError):
            aggregate(Broken(geo=_geo()))
