"""
crisis_backend.indices — Index Calculator.

Pure-computation module. Zero I/O. Zero global state. Zero randomness.
Every function maps one record's raw fields to one derived value.

    percent_funded         = received / requirements * 100      (requirements > 0)
    funding_gap            = max(0, requirements - received)
    funding_gap_per_capita = funding_gap / targeted              (targeted > 0, else 0)
    neglect_index          = (severity / 5)
                             * (1 - min(percent_funded, 100) / 100)
                             * log10(1 + requirements / 1e6)
                             with percent_funded = 0 when absent
    reach_ratio            = reached / targeted * 100            (targeted > 0)
    cbpf_dependency        = allocations / received * 100        (received > 0)

Absent vs zero:
    None is "undefined for this record". It is never coerced to 0 or to an
    extreme. funding_gap_per_capita is the one exception: it is explicitly 0
    when nobody is targeted, and the anomaly cohort filters those records
    out by targeted_population, not by value.

Non-finite inputs produce None. Finite results are rounded to
ROUND_PRECISION here, once.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from crisis_backend.constants import REQUIREMENTS_SCALE, ROUND_PRECISION, SEVERITY_MAX
from crisis_backend.models import CountryCrisisRecord, DerivedIndices


def _finite(*values: float) -> bool:
    return all(not (math.isnan(v) or math.isinf(v)) for v in values)


def _out(value: float) -> Optional[float]:
    """Round a finished result, or None if it is not finite."""
    if not _finite(value):
        return None
    return round(value, ROUND_PRECISION)


def _ratio_pct(numerator: float, denominator: float) -> Optional[float]:
    if not _finite(numerator, denominator) or denominator <= 0:
        return None
    return _out(numerator / denominator * 100.0)


# ---------------------------------------------------------------------------
# Core indices
# ---------------------------------------------------------------------------

def compute_percent_funded(requirements: float, received: float) -> Optional[float]:
    """On-appeal funding as a percentage of requirements. None without an appeal."""
    return _ratio_pct(received, requirements)


def compute_funding_gap(requirements: float, received: float) -> Optional[float]:
    """Unmet requirements, never negative."""
    if not _finite(requirements, received):
        return None
    return _out(max(0.0, requirements - received))


def compute_funding_gap_per_capita(funding_gap: Optional[float], targeted: int) -> Optional[float]:
    """Funding gap per targeted person; 0 when nobody is targeted."""
    if funding_gap is None:
        return None
    if targeted <= 0:
        return 0.0
    return _out(funding_gap / targeted)


def compute_neglect_index(
    severity_index: float,
    percent_funded: Optional[float],
    requirements: float,
) -> Optional[float]:
    """Severity weight x unmet-need fraction x log-scaled appeal size.

    Missing funding data is treated as fully unfunded. Over-funded appeals
    contribute an unmet fraction of 0, not a negative one.
    """
    if not _finite(severity_index, requirements) or requirements < 0:
        return None
    pf = 0.0 if percent_funded is None else min(percent_funded, 100.0)
    unfunded = 1.0 - pf / 100.0
    magnitude = math.log10(1.0 + requirements / REQUIREMENTS_SCALE)
    return _out((severity_index / SEVERITY_MAX) * unfunded * magnitude)


def compute_reach_ratio(reached: int, targeted: int) -> Optional[float]:
    """People reached as a percentage of people targeted.

    0.0 is a real value (access denial, non-delivery) and is kept apart
    from None (no delivery data).
    """
    return _ratio_pct(float(reached), float(targeted))


def compute_cbpf_dependency(allocations: float, received: float) -> Optional[float]:
    """Pooled-fund allocations as a percentage of on-appeal funding received."""
    return _ratio_pct(allocations, received)


# ---------------------------------------------------------------------------
# Supplementary indices
# ---------------------------------------------------------------------------

def compute_percent_funded_all(requirements: float, received: float, off_appeal: float) -> Optional[float]:
    """On- plus off-appeal funding against appeal requirements."""
    if not _finite(received, off_appeal):
        return None
    return _ratio_pct(received + off_appeal, requirements)


def compute_off_appeal_share(received: float, off_appeal: float) -> Optional[float]:
    """Share of all funding that arrived outside a formal appeal."""
    if not _finite(received, off_appeal):
        return None
    return _ratio_pct(off_appeal, received + off_appeal)


def compute_dollar_per_person(allocations: float, targeted: int) -> Optional[float]:
    if not _finite(allocations) or targeted <= 0:
        return None
    return _out(allocations / targeted)


def compute_cost_per_reached(allocations: float, reached: int) -> Optional[float]:
    if not _finite(allocations) or reached <= 0:
        return None
    return _out(allocations / reached)


# ---------------------------------------------------------------------------
# Record-level entry points
# ---------------------------------------------------------------------------

def compute_indices(record: CountryCrisisRecord) -> DerivedIndices:
    """Compute every derived index for one record."""
    req = record.funding_requirements
    rec = record.funding_received
    pf = compute_percent_funded(req, rec)
    gap = compute_funding_gap(req, rec)

    return DerivedIndices(
        percent_funded=pf,
        funding_gap=gap,
        funding_gap_per_capita=compute_funding_gap_per_capita(gap, record.targeted_population),
        neglect_index=compute_neglect_index(record.severity_index, pf, req),
        reach_ratio=compute_reach_ratio(record.reached_population, record.targeted_population),
        cbpf_dependency=compute_cbpf_dependency(record.pooled_fund_allocations, rec),
        percent_funded_all=compute_percent_funded_all(req, rec, record.off_appeal_funding),
        off_appeal_share=compute_off_appeal_share(rec, record.off_appeal_funding),
        dollar_per_person=compute_dollar_per_person(
            record.pooled_fund_allocations, record.targeted_population,
        ),
        cost_per_reached=compute_cost_per_reached(
            record.pooled_fund_allocations, record.reached_population,
        ),
    )


def with_indices(record: CountryCrisisRecord) -> CountryCrisisRecord:
    """Return a copy of the record with its derived indices attached."""
    return record.model_copy(update={"indices": compute_indices(record)})


def absent_last_key(value: Optional[float], *, descending: bool = False) -> tuple[Any, ...]:
    """Sort key that places None after every real value in either direction.

    Use as ``key=lambda r: (absent_last_key(r.indices.x, descending=True), r.country_code)``.
    """
    if value is None:
        return (1, 0.0)
    return (0, -value if descending else value)
