"""
crisis_backend.anomalies — Percentile-based anomaly detection.

Ranks every crisis-affected country against all the others, one metric at
a time, and flags the tails. Percentile rank is used instead of z-scores:
appeal sizes and per-capita gaps are heavily right-skewed (std ~ mean), so
a mean/stddev threshold either never fires or asks for negative dollars.

Per metric:
    1. Cohort = one canonical record per ISO3 (first seen), filtered to the
       records for which the metric is defined.
    2. Fewer than MIN_COHORT candidates → metric skipped for the run.
    3. Sort ascending by value (tie-break ISO3). Rank of the i-th of n is
       i / (n - 1) * 100; a single member ranks 50.
    4. low direction:  rank <= 5 critical, rank <= 10 warning
       high direction: rank >= 95 critical, rank >= 90 warning

Results are returned as a side map ISO3 → tuple[Anomaly, ...]. The tuple
is computed once per country and the same tuple object is attached to every
record of that country, whichever crisis it sits in.

Ordering inside a tuple: critical before warning, then by distance from the
tail of concern (most extreme first), then metric registry order.

Known behaviour kept on purpose: the severity/funding mismatch cohort
requires percent_funded > 0, so 0 %-funded countries never enter it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from crisis_backend.constants import (
    DIRECTION_HIGH,
    DIRECTION_LOW,
    MIN_COHORT,
    P_CRITICAL,
    P_WARNING,
    ROUND_PRECISION,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    SINGLE_MEMBER_RANK,
)
from crisis_backend.models import Anomaly, CountryCrisisRecord

logger = logging.getLogger("crisis.anomalies")


# ---------------------------------------------------------------------------
# Percentile helpers
# ---------------------------------------------------------------------------

def percentile_rank(index: int, total: int) -> float:
    """Percentile rank (0–100) of the index-th of total ascending observations."""
    if total <= 1:
        return SINGLE_MEMBER_RANK
    return index / (total - 1) * 100.0


def classify_percentile(rank: float, direction: str) -> Optional[str]:
    """Map a percentile rank to "critical", "warning" or None.

    A rank exactly on a boundary counts toward the stricter side.
    """
    if direction == DIRECTION_LOW:
        if rank <= P_CRITICAL:
            return SEVERITY_CRITICAL
        if rank <= P_WARNING:
            return SEVERITY_WARNING
        return None
    if direction == DIRECTION_HIGH:
        if rank >= 100.0 - P_CRITICAL:
            return SEVERITY_CRITICAL
        if rank >= 100.0 - P_WARNING:
            return SEVERITY_WARNING
        return None
    raise ValueError(f"Unknown direction: '{direction}'")


def _band(rank: float) -> str:
    return "<1" if rank < 1 else str(round(rank))


@dataclass(frozen=True)
class Cohort:
    """Summary of a metric's candidate population, for descriptions."""
    n: int
    median: float


# ---------------------------------------------------------------------------
# Metric registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetricDefinition:
    """One anomaly metric.

    value:     metric value for a record, or None when undefined
    eligible:  cohort filter (applied on top of value is not None)
    describe:  human-readable text for a flagged record
    """
    name: str
    direction: str
    value: Callable[[CountryCrisisRecord], Optional[float]]
    eligible: Callable[[CountryCrisisRecord], bool]
    describe: Callable[[CountryCrisisRecord, float, float, Cohort], str]


def _mismatch_value(r: CountryCrisisRecord) -> Optional[float]:
    pf = r.indices.percent_funded
    if pf is None or pf <= 0:
        return None
    return round(r.severity_index / pf, ROUND_PRECISION)


def _describe_percent_funded(r: CountryCrisisRecord, value: float, rank: float, cohort: Cohort) -> str:
    return (
        f"Funded at {value:.1f}% of appeal: bottom {_band(rank)}th percentile "
        f"of {cohort.n} countries (median {cohort.median:.1f}%)"
    )


def _describe_gap_per_capita(r: CountryCrisisRecord, value: float, rank: float, cohort: Cohort) -> str:
    return (
        f"${value:,.0f} unfunded per targeted person: top {_band(100.0 - rank)}th "
        f"percentile of {cohort.n} countries (median ${cohort.median:,.0f})"
    )


def _describe_mismatch(r: CountryCrisisRecord, value: float, rank: float, cohort: Cohort) -> str:
    pf = r.indices.percent_funded or 0.0
    return (
        f"Severity {r.severity_index:.1f} but only {pf:.1f}% funded "
        f"(ratio {value:.3f}): top {_band(100.0 - rank)}th percentile "
        f"of {cohort.n} countries"
    )


def _describe_reach_ratio(r: CountryCrisisRecord, value: float, rank: float, cohort: Cohort) -> str:
    return (
        f"Reached {value:.1f}% of {r.targeted_population:,} targeted people: "
        f"bottom {_band(rank)}th percentile of {cohort.n} countries "
        f"(median {cohort.median:.1f}%)"
    )


METRICS: tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="percentFunded",
        direction=DIRECTION_LOW,
        value=lambda r: r.indices.percent_funded,
        eligible=lambda r: r.funding_requirements > 0,
        describe=_describe_percent_funded,
    ),
    MetricDefinition(
        name="fundingGapPerCapita",
        direction=DIRECTION_HIGH,
        value=lambda r: r.indices.funding_gap_per_capita,
        eligible=lambda r: (
            r.funding_requirements > 0
            and r.targeted_population > 0
            and (r.indices.funding_gap_per_capita or 0.0) > 0
        ),
        describe=_describe_gap_per_capita,
    ),
    MetricDefinition(
        name="severityFundingMismatch",
        direction=DIRECTION_HIGH,
        value=_mismatch_value,
        eligible=lambda r: (
            r.severity_index > 0
            and r.indices.percent_funded is not None
            and r.indices.percent_funded > 0
        ),
        describe=_describe_mismatch,
    ),
    MetricDefinition(
        name="reachRatio",
        direction=DIRECTION_LOW,
        value=lambda r: r.indices.reach_ratio,
        eligible=lambda r: r.targeted_population > 0,
        describe=_describe_reach_ratio,
    ),
)

METRIC_NAMES: tuple[str, ...] = tuple(m.name for m in METRICS)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def canonical_records(records: Iterable[CountryCrisisRecord]) -> dict[str, CountryCrisisRecord]:
    """ISO3 → first record seen for that country (insertion-ordered)."""
    canonical: dict[str, CountryCrisisRecord] = {}
    for r in records:
        canonical.setdefault(r.country_code, r)
    return canonical


def build_cohort(
    canonical: dict[str, CountryCrisisRecord],
    metric: MetricDefinition,
) -> list[tuple[float, str]]:
    """Ascending (value, ISO3) pairs for every record the metric is defined on."""
    cohort: list[tuple[float, str]] = []
    for code, r in canonical.items():
        if not metric.eligible(r):
            continue
        v = metric.value(r)
        if v is None:
            continue
        cohort.append((v, code))
    cohort.sort()
    return cohort


def detect_metric(
    canonical: dict[str, CountryCrisisRecord],
    metric: MetricDefinition,
    min_cohort: int = MIN_COHORT,
) -> dict[str, Anomaly]:
    """Run one metric over the canonical records. Returns ISO3 → Anomaly."""
    cohort = build_cohort(canonical, metric)
    n = len(cohort)
    if n < min_cohort:
        logger.info(
            "Metric %s skipped: cohort of %d below minimum %d",
            metric.name, n, min_cohort,
        )
        return {}

    summary = Cohort(n=n, median=cohort[n // 2][0])
    found: dict[str, Anomaly] = {}

    for i, (value, code) in enumerate(cohort):
        rank = round(percentile_rank(i, n), ROUND_PRECISION)
        severity = classify_percentile(rank, metric.direction)
        if severity is None:
            continue
        found[code] = Anomaly(
            metric=metric.name,
            description=metric.describe(canonical[code], value, rank, summary),
            value=value,
            percentile_rank=rank,
            direction=metric.direction,
            severity=severity,
        )

    logger.debug("Metric %s: %d flagged of %d", metric.name, len(found), n)
    return found


def _order_key(metric_order: dict[str, int]) -> Callable[[Anomaly], tuple]:
    def key(a: Anomaly) -> tuple:
        return (
            0 if a.severity == SEVERITY_CRITICAL else 1,
            a.tail_distance,
            metric_order.get(a.metric, len(metric_order)),
        )
    return key


def detect_anomalies(
    records: Iterable[CountryCrisisRecord],
    metrics: Iterable[MetricDefinition] = METRICS,
    min_cohort: int = MIN_COHORT,
) -> dict[str, tuple[Anomaly, ...]]:
    """Detect anomalies across all crises.

    Returns ISO3 → ordered anomaly tuple for every country present in
    ``records`` (empty tuple when nothing was flagged). Records are not
    modified; see apply_anomalies().
    """
    metrics = tuple(metrics)
    canonical = canonical_records(records)
    collected: dict[str, list[Anomaly]] = {code: [] for code in canonical}

    for metric in metrics:
        for code, anomaly in detect_metric(canonical, metric, min_cohort).items():
            collected[code].append(anomaly)

    key = _order_key({m.name: i for i, m in enumerate(metrics)})
    return {code: tuple(sorted(found, key=key)) for code, found in collected.items()}


def apply_anomalies(
    records: Iterable[CountryCrisisRecord],
    side_map: dict[str, tuple[Anomaly, ...]],
) -> list[CountryCrisisRecord]:
    """Attach each country's anomaly tuple to every one of its records."""
    return [
        r.model_copy(update={"anomalies": side_map.get(r.country_code, ())})
        for r in records
    ]
