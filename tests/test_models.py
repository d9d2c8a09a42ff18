"""
tests/test_models.py — Record model validation contract.

    - severity outside [0, 5] or non-finite → ValidationError
    - ISO3 normalised, malformed → ValidationError
    - negative / non-finite money and population → clamped to 0 with WARNING
    - severity category normalised or derived from the index band
    - frozen instances, camelCase wire format

Requires: pytest, pydantic
"""

from __future__ import annotations

import logging
import math

import pytest
from pydantic import ValidationError

from crisis_backend.models import (
    Anomaly,
    CountryCrisisRecord,
    CountryFunding,
    Snapshot,
    category_for_index,
    normalize_country_code,
)


def make_record(**overrides) -> CountryCrisisRecord:
    fields = {
        "country_code": "yem",
        "crisis_id": "YEM001",
        "severity_index": 4.2,
    }
    fields.update(overrides)
    return CountryCrisisRecord(**fields)


class TestSeverityValidation:

    @pytest.mark.parametrize("value", [0, 0.0, 2.5, 5, 5.0])
    def test_in_range_accepted(self, value):
        assert make_record(severity_index=value).severity_index == float(value)

    @pytest.mark.parametrize("value", [-0.1, 5.01, 10, math.nan, math.inf, "high", None])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            make_record(severity_index=value)


class TestCountryCode:

    def test_normalised(self):
        assert make_record(country_code=" yem ").country_code == "YEM"

    @pytest.mark.parametrize("value", ["YE", "YEME", "Y3M", "", None])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            make_record(country_code=value)

    def test_helper(self):
        assert normalize_country_code("sdn") == "SDN"
        with pytest.raises(ValueError):
            normalize_country_code("SD")

    def test_country_name_defaults_to_code(self):
        assert make_record().country_name == "YEM"
        assert make_record(country_name="Yemen").country_name == "Yemen"


class TestClamping:
    """Upstream placeholder negatives are clamped, not rejected."""

    def test_negative_amount_clamped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="crisis.models"):
            r = make_record(funding_received=-5.0)
        assert r.funding_received == 0.0
        assert any("funding_received" in m for m in caplog.messages)

    def test_negative_population_clamped(self):
        r = make_record(targeted_population=-100, reached_population=-1)
        assert r.targeted_population == 0
        assert r.reached_population == 0

    def test_non_finite_amount_clamped(self):
        assert make_record(funding_requirements=math.inf).funding_requirements == 0.0

    def test_blank_amount_is_zero(self):
        assert make_record(pooled_fund_allocations="").pooled_fund_allocations == 0.0

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(ValidationError):
            make_record(funding_received="lots")

    def test_funding_aggregate_clamps(self):
        f = CountryFunding(country_code="som", requirements=-1, on_appeal_funding=10, off_appeal_funding=5)
        assert f.country_code == "SOM"
        assert f.requirements == 0.0
        assert f.total_funding_all == 15.0


class TestSeverityCategory:

    def test_case_normalised(self):
        assert make_record(severity_category="very high").severity_category == "Very High"

    @pytest.mark.parametrize("index,expected", [
        (4.2, "Very High"), (4.0, "Very High"), (3.5, "High"),
        (2.0, "Medium"), (1.2, "Low"), (0.4, "Very Low"),
    ])
    def test_derived_when_blank(self, index, expected):
        assert make_record(severity_index=index, severity_category="").severity_category == expected
        assert category_for_index(index) == expected

    def test_unknown_text_derived(self):
        assert make_record(severity_index=3.1, severity_category="x").severity_category == "High"


class TestImmutabilityAndWire:

    def test_frozen(self):
        r = make_record()
        with pytest.raises(ValidationError):
            r.severity_index = 1.0

    def test_camel_case_wire(self):
        dumped = make_record(targeted_population=10).model_dump(mode="json", by_alias=True)
        assert dumped["countryCode"] == "YEM"
        assert dumped["targetedPopulation"] == 10
        assert "percentFunded" in dumped["indices"]
        assert dumped["indices"]["percentFunded"] is None

    def test_accepts_camel_case_input(self):
        r = CountryCrisisRecord.model_validate({
            "countryCode": "SSD", "crisisId": "SSD001", "severityIndex": 4.0,
        })
        assert r.country_code == "SSD"

    def test_tail_distance(self):
        low = Anomaly(metric="m", description="", value=1.0, percentile_rank=5.0,
                      direction="low", severity="critical")
        high = Anomaly(metric="m", description="", value=1.0, percentile_rank=95.0,
                       direction="high", severity="critical")
        assert low.tail_distance == 5.0
        assert high.tail_distance == 5.0

    def test_snapshot_crisis_lookup(self):
        assert Snapshot(target_year=2025).crisis("nope") is None
