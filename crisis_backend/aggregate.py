"""
crisis_backend.aggregate — Aggregation driver.

One run, front to back, in memory:

    1. load geography, severity rows, funding rows, allocation rows
       through the DataSources collaborator
    2. aggregate funding and allocations per ISO3
    3. build one CountryCrisisRecord per (crisis, ISO3) severity entry
    4. compute derived indices per record
    5. detect anomalies once over the whole record set, write back
    6. group into crises, sort, derive crisis categories
    7. roll up global statistics and per-country profiles
    8. hash every record and the snapshot

Any exception from a collaborator propagates; no partial Snapshot is ever
returned. Malformed rows were already dropped by the loaders; records the
model rejects (severity out of range, bad ISO3) are logged and skipped here.

Sorting (deterministic, tie-broken):
    crisis countries: neglect_index descending, absent last, then ISO3
    crises:           crisis name (case-insensitive), then crisis id
    profiles:         ISO3
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Iterable, Optional

from pydantic import ValidationError

from crisis_backend.anomalies import apply_anomalies, detect_anomalies
from crisis_backend.constants import (
    CRISIS_CATEGORY_PATTERNS,
    ROUND_PRECISION,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
)
from crisis_backend.geo import CountryReference
from crisis_backend.hashing import compute_record_hash, compute_snapshot_hash, record_key
from crisis_backend.indices import absent_last_key, compute_percent_funded, with_indices
from crisis_backend.models import (
    CountryAllocation,
    CountryCrisisRecord,
    CountryFunding,
    CountryProfile,
    Crisis,
    GlobalStats,
    Snapshot,
)
from crisis_backend.sources import (
    DataSources,
    SeverityRow,
    aggregate_allocations,
    aggregate_funding,
)

logger = logging.getLogger("crisis.aggregate")

_CATEGORY_REGEXES = tuple((label, re.compile(p)) for label, p in CRISIS_CATEGORY_PATTERNS)
_DRIVER_SPLIT = re.compile(r"[;,]")


# ---------------------------------------------------------------------------
# Record construction
# ---------------------------------------------------------------------------

def build_records(
    severity_rows: Iterable[SeverityRow],
    funding: dict[str, CountryFunding],
    allocations: dict[str, CountryAllocation],
    geo: CountryReference,
) -> list[CountryCrisisRecord]:
    """Join severity entries with per-country funding and allocations.

    Duplicate (crisis, ISO3) entries keep the first occurrence.
    """
    records: list[CountryCrisisRecord] = []
    seen: set[tuple[str, str]] = set()
    rejected = 0

    for row in severity_rows:
        key = (row.crisis_id, row.iso3.strip().upper())
        if key in seen:
            logger.debug("Duplicate severity entry %s/%s ignored", *key)
            continue

        f = funding.get(key[1])
        a = allocations.get(key[1])
        try:
            record = CountryCrisisRecord(
                country_code=row.iso3,
                country_name=geo.name_for(key[1], row.country_name),
                crisis_id=row.crisis_id,
                crisis_name=row.crisis_name,
                drivers=row.drivers,
                severity_index=row.severity_index,
                severity_category=row.severity_category,
                funding_requirements=f.requirements if f else 0.0,
                funding_received=f.on_appeal_funding if f else 0.0,
                off_appeal_funding=f.off_appeal_funding if f else 0.0,
                pooled_fund_allocations=a.total_allocations if a else 0.0,
                targeted_population=a.targeted_people if a else 0,
                reached_population=a.reached_people if a else 0,
            )
        except ValidationError as exc:
            rejected += 1
            logger.warning(
                "Rejected record %s/%s: %s",
                row.crisis_id, row.iso3, exc.errors()[0].get("msg", str(exc)),
            )
            continue

        seen.add(key)
        records.append(record)

    if rejected:
        logger.warning("%d severity entr(y/ies) rejected by validation", rejected)
    return records


# ---------------------------------------------------------------------------
# Crisis grouping
# ---------------------------------------------------------------------------

def derive_categories(crisis_name: str, drivers: Iterable[str]) -> tuple[str, ...]:
    """Normalized crisis categories from the crisis name and driver text.

    Falls back to the raw driver tokens when no keyword matches.
    """
    drivers = [d for d in drivers if d]
    text = " ".join([crisis_name, *drivers]).lower()

    found: list[str] = []
    for label, regex in _CATEGORY_REGEXES:
        if label not in found and regex.search(text):
            found.append(label)

    if not found:
        for d in drivers:
            for token in _DRIVER_SPLIT.split(d):
                token = token.strip()
                if token and token not in found:
                    found.append(token)
    return tuple(found)


def sort_crisis_countries(records: Iterable[CountryCrisisRecord]) -> tuple[CountryCrisisRecord, ...]:
    """Most neglected first; records without a neglect index last."""
    return tuple(sorted(
        records,
        key=lambda r: (absent_last_key(r.indices.neglect_index, descending=True), r.country_code),
    ))


def group_crises(records: Iterable[CountryCrisisRecord]) -> tuple[Crisis, ...]:
    grouped: OrderedDict[str, list[CountryCrisisRecord]] = OrderedDict()
    for r in records:
        grouped.setdefault(r.crisis_id, []).append(r)

    crises = [
        Crisis(
            crisis_id=crisis_id,
            crisis_name=members[0].crisis_name or crisis_id,
            categories=derive_categories(
                members[0].crisis_name, (m.drivers for m in members),
            ),
            countries=sort_crisis_countries(members),
        )
        for crisis_id, members in grouped.items()
    ]
    crises.sort(key=lambda c: (c.crisis_name.casefold(), c.crisis_id))
    return tuple(crises)


# ---------------------------------------------------------------------------
# Country profiles and roll-up
# ---------------------------------------------------------------------------

def build_country_profiles(
    records: Iterable[CountryCrisisRecord],
    funding: dict[str, CountryFunding],
    allocations: dict[str, CountryAllocation],
) -> dict[str, CountryProfile]:
    """One profile per country in crisis, carrying its most severe entry."""
    by_country: dict[str, list[CountryCrisisRecord]] = {}
    for r in records:
        by_country.setdefault(r.country_code, []).append(r)

    profiles: dict[str, CountryProfile] = {}
    for code in sorted(by_country):
        entries = by_country[code]
        worst = entries[0]
        for r in entries[1:]:
            if r.severity_index > worst.severity_index:
                worst = r
        profiles[code] = CountryProfile(
            country_code=code,
            country_name=worst.country_name,
            severity_index=worst.severity_index,
            severity_category=worst.severity_category,
            crisis_ids=tuple(sorted({r.crisis_id for r in entries})),
            funding=funding.get(code),
            allocation=allocations.get(code),
            anomalies=entries[0].anomalies,
        )
    return profiles


def compute_global_stats(
    funding: dict[str, CountryFunding],
    allocations: dict[str, CountryAllocation],
    profiles: dict[str, CountryProfile],
    crises: tuple[Crisis, ...],
) -> GlobalStats:
    """Population-wide totals across every country with source data."""
    total_req = sum(f.requirements for f in funding.values())
    total_fund = sum(f.on_appeal_funding for f in funding.values())
    total_off = sum(f.off_appeal_funding for f in funding.values())
    total_cbpf = sum(a.total_allocations for a in allocations.values())

    critical = sum(
        1 for p in profiles.values() for a in p.anomalies if a.severity == SEVERITY_CRITICAL
    )
    warning = sum(
        1 for p in profiles.values() for a in p.anomalies if a.severity == SEVERITY_WARNING
    )

    return GlobalStats(
        total_requirements=round(total_req, ROUND_PRECISION),
        total_funding=round(total_fund, ROUND_PRECISION),
        total_off_appeal_funding=round(total_off, ROUND_PRECISION),
        total_cbpf_allocations=round(total_cbpf, ROUND_PRECISION),
        percent_funded=compute_percent_funded(total_req, total_fund),
        countries_in_crisis=len(profiles),
        active_crisis_count=len(crises),
        critical_anomaly_count=critical,
        warning_anomaly_count=warning,
    )


def compute_hashes(records: Iterable[CountryCrisisRecord], target_year: int) -> tuple[dict[str, str], str]:
    """Returns (record_hashes, snapshot_hash)."""
    record_hashes = {record_key(r): compute_record_hash(r, target_year) for r in records}
    return record_hashes, compute_snapshot_hash(record_hashes)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def annotate(records: Iterable[CountryCrisisRecord]) -> list[CountryCrisisRecord]:
    """Indices per record, then one detection pass over the whole set."""
    indexed = [with_indices(r) for r in records]
    side_map = detect_anomalies(indexed)
    return apply_anomalies(indexed, side_map)


def aggregate(sources: DataSources, target_year: Optional[int] = None) -> Snapshot:
    """Run the full pipeline and return a complete, frozen Snapshot.

    The year filter lives in the sources; ``target_year``, when given, must
    agree with it.
    """
    year = sources.target_year
    if target_year is not None and target_year != year:
        raise ValueError(f"target_year {target_year} does not match sources year {year}")

    geo = sources.geography()
    severity_rows = sources.severity_rows()
    funding = aggregate_funding(sources.funding_rows())
    allocations = aggregate_allocations(sources.allocation_rows(), geo)
    logger.info(
        "Sources loaded: %d severity entries, %d funded countries, %d pooled-fund countries",
        len(severity_rows), len(funding), len(allocations),
    )

    records = annotate(build_records(severity_rows, funding, allocations, geo))
    crises = group_crises(records)
    profiles = build_country_profiles(records, funding, allocations)
    stats = compute_global_stats(funding, allocations, profiles, crises)
    _, snapshot_hash = compute_hashes(records, year)

    snapshot = Snapshot(
        target_year=year,
        crises=crises,
        countries=profiles,
        stats=stats,
        snapshot_hash=snapshot_hash,
    )
    logger.info(
        "Aggregated %d records into %d crises (%d countries, %d critical / %d warning flags), hash %s",
        len(records), len(crises), len(profiles),
        stats.critical_anomaly_count, stats.warning_anomaly_count, snapshot_hash[:16],
    )
    return snapshot
