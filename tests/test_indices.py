"""
tests/test_indices.py — Unit tests for the index calculator.

Pure functions only: every test builds a record (or raw numbers) and
checks one derived value, with particular attention to absent-vs-zero.

Requires: pytest, pydantic
"""

from __future__ import annotations

import math

import pytest

from crisis_backend.constants import ROUND_PRECISION
from crisis_backend.indices import (
    absent_last_key,
    compute_cbpf_dependency,
    compute_cost_per_reached,
    compute_dollar_per_person,
    compute_funding_gap,
    compute_funding_gap_per_capita,
    compute_indices,
    compute_neglect_index,
    compute_off_appeal_share,
    compute_percent_funded,
    compute_percent_funded_all,
    compute_reach_ratio,
    with_indices,
)
from crisis_backend.models import CountryCrisisRecord


def make_record(**overrides) -> CountryCrisisRecord:
    fields = {
        "country_code": "SDN",
        "crisis_id": "SDN001",
        "crisis_name": "Sudan conflict",
        "severity_index": 4.0,
        "funding_requirements": 1_000_000_000.0,
        "funding_received": 250_000_000.0,
        "targeted_population": 10_000_000,
        "reached_population": 4_000_000,
    }
    fields.update(overrides)
    return CountryCrisisRecord(**fields)


# ---------------------------------------------------------------------------
# percent_funded / funding_gap
# ---------------------------------------------------------------------------

class TestPercentFunded:
    """percent_funded is None without requirements, never 0 or 100."""

    def test_basic(self):
        assert compute_percent_funded(200.0, 50.0) == 25.0

    def test_zero_requirements_is_absent(self):
        assert compute_percent_funded(0.0, 50.0) is None
        assert compute_percent_funded(0.0, 0.0) is None

    def test_overfunded_above_100(self):
        assert compute_percent_funded(100.0, 150.0) == 150.0

    def test_non_finite_is_absent(self):
        assert compute_percent_funded(math.inf, 1.0) is None
        assert compute_percent_funded(100.0, math.nan) is None

    def test_rounded(self):
        pf = compute_percent_funded(3.0, 1.0)
        assert pf == round(100.0 / 3.0, ROUND_PRECISION)


class TestFundingGap:

    def test_gap_is_difference(self):
        assert compute_funding_gap(100.0, 30.0) == 70.0

    def test_gap_clamped_at_zero(self):
        assert compute_funding_gap(100.0, 130.0) == 0.0

    def test_no_requirements_no_gap(self):
        assert compute_funding_gap(0.0, 10.0) == 0.0

    def test_gap_per_capita(self):
        assert compute_funding_gap_per_capita(1000.0, 10) == 100.0

    def test_gap_per_capita_zero_targeted_is_explicit_zero(self):
        assert compute_funding_gap_per_capita(1000.0, 0) == 0.0


# ---------------------------------------------------------------------------
# Neglect index
# ---------------------------------------------------------------------------

class TestNeglectIndex:
    """(sev/5) * (1 - min(pf,100)/100) * log10(1 + req/1e6)."""

    def test_formula(self):
        got = compute_neglect_index(4.0, 25.0, 1_000_000_000.0)
        expected = (4.0 / 5.0) * 0.75 * math.log10(1.0 + 1000.0)
        assert got == round(expected, ROUND_PRECISION)

    def test_absent_percent_funded_treated_as_unfunded(self):
        got = compute_neglect_index(5.0, None, 9_000_000.0)
        assert got == round(1.0 * 1.0 * math.log10(10.0), ROUND_PRECISION)

    def test_zero_requirements_scores_zero(self):
        """No appeal: magnitude term is log10(1) = 0."""
        assert compute_neglect_index(4.5, None, 0.0) == 0.0

    def test_overfunded_never_negative(self):
        assert compute_neglect_index(5.0, 180.0, 50_000_000.0) == 0.0

    def test_monotone_in_severity(self):
        low = compute_neglect_index(2.0, 40.0, 1e8)
        high = compute_neglect_index(4.0, 40.0, 1e8)
        assert high > low

    def test_non_finite_is_absent(self):
        assert compute_neglect_index(math.nan, 10.0, 1e6) is None


# ---------------------------------------------------------------------------
# Reach / dependency / supplementary
# ---------------------------------------------------------------------------

class TestReachAndDependency:

    def test_reach_ratio(self):
        assert compute_reach_ratio(25, 100) == 25.0

    def test_zero_reach_is_real_value(self):
        assert compute_reach_ratio(0, 100) == 0.0

    def test_no_targeted_is_absent(self):
        assert compute_reach_ratio(0, 0) is None
        assert compute_reach_ratio(10, 0) is None

    def test_cbpf_dependency(self):
        assert compute_cbpf_dependency(10.0, 40.0) == 25.0

    def test_cbpf_dependency_no_funding_absent(self):
        assert compute_cbpf_dependency(10.0, 0.0) is None


class TestSupplementaryIndices:

    def test_percent_funded_all_includes_off_appeal(self):
        assert compute_percent_funded_all(100.0, 40.0, 20.0) == 60.0

    def test_percent_funded_all_absent_without_requirements(self):
        assert compute_percent_funded_all(0.0, 40.0, 20.0) is None

    def test_off_appeal_share(self):
        assert compute_off_appeal_share(75.0, 25.0) == 25.0

    def test_off_appeal_share_no_funding(self):
        assert compute_off_appeal_share(0.0, 0.0) is None

    def test_dollar_per_person(self):
        assert compute_dollar_per_person(500.0, 50) == 10.0
        assert compute_dollar_per_person(500.0, 0) is None

    def test_cost_per_reached(self):
        assert compute_cost_per_reached(500.0, 25) == 20.0
        assert compute_cost_per_reached(500.0, 0) is None


# ---------------------------------------------------------------------------
# Record-level
# ---------------------------------------------------------------------------

class TestComputeIndices:

    def test_all_fields_populated(self):
        idx = compute_indices(make_record(pooled_fund_allocations=50_000_000.0))
        assert idx.percent_funded == 25.0
        assert idx.funding_gap == 750_000_000.0
        assert idx.funding_gap_per_capita == 75.0
        assert idx.reach_ratio == 40.0
        assert idx.cbpf_dependency == 20.0
        assert idx.dollar_per_person == 5.0
        assert idx.neglect_index is not None and idx.neglect_index > 0

    def test_no_appeal_data(self):
        idx = compute_indices(make_record(funding_requirements=0, funding_received=0))
        assert idx.percent_funded is None
        assert idx.funding_gap == 0.0
        assert idx.cbpf_dependency is None

    def test_no_delivery_data(self):
        idx = compute_indices(make_record(targeted_population=0, reached_population=0))
        assert idx.funding_gap_per_capita == 0.0
        assert idx.reach_ratio is None

    def test_with_indices_returns_new_record(self):
        r = make_record()
        out = with_indices(r)
        assert out is not r
        assert r.indices.percent_funded is None
        assert out.indices.percent_funded == 25.0
        assert out.country_code == r.country_code

    @pytest.mark.parametrize("req,rec", [
        (100.0, 0.0), (100.0, 50.0), (100.0, 100.0), (100.0, 400.0), (0.0, 30.0),
    ])
    def test_gap_invariant(self, req, rec):
        idx = compute_indices(make_record(funding_requirements=req, funding_received=rec))
        assert idx.funding_gap >= 0
        if req > 0:
            assert idx.funding_gap == max(0.0, req - rec)


class TestAbsentLastKey:
    """None sorts after every real value, in either direction."""

    def test_ascending(self):
        values = [3.0, None, 1.0, 2.0]
        assert sorted(values, key=absent_last_key) == [1.0, 2.0, 3.0, None]

    def test_descending(self):
        values = [None, 1.0, 3.0, 2.0]
        got = sorted(values, key=lambda v: absent_last_key(v, descending=True))
        assert got == [3.0, 2.0, 1.0, None]

    def test_zero_is_not_absent(self):
        got = sorted([None, 0.0], key=lambda v: absent_last_key(v, descending=True))
        assert got == [0.0, None]
