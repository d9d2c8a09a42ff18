"""
crisis_backend.sources — Source loaders and per-country source aggregates.

The aggregation driver talks to its inputs through the DataSources
protocol only. CsvDataSources is the production implementation and reads
flat exports from one data directory:

    inform_severity.csv           one row per (crisis, country) severity entry
    fts_requirements_funding.csv  one row per appeal plan line, HXL tag row 2
    cbpf_allocations.csv          one row per pooled fund x cluster
    countries.geo.json            ISO3 / name reference

Error contract:
    - missing file          → SourceUnavailableError (fatal, propagates)
    - malformed row         → RowError, caught per row, logged WARNING with
                              file and line number, row skipped
    - HXL tag row (#...)    → skipped silently
    - row outside the year  → skipped silently

Funding rows are split into on-appeal and off-appeal by plan name: a blank
plan or "Not specified" is off-appeal money. Pooled-fund rows are mapped
to ISO3 by fuzzy name match and summed per ISO3; rows whose fund name does
not resolve are logged and dropped.
"""

from __future__ import annotations

import csv
import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol

from crisis_backend.constants import (
    HXL_TAG_PREFIX,
    OFF_APPEAL_PLAN_NAMES,
    ROUND_PRECISION,
    TARGET_YEAR,
)
from crisis_backend.geo import CountryReference, load_geography, parse_cbpf_country_name
from crisis_backend.models import CountryAllocation, CountryFunding, clamp_amount, clamp_count

logger = logging.getLogger("crisis.sources")

SEVERITY_FILE = "inform_severity.csv"
FUNDING_FILE = "fts_requirements_funding.csv"
ALLOCATION_FILE = "cbpf_allocations.csv"
GEOGRAPHY_FILE = "countries.geo.json"

_ISO3_SEPARATORS = re.compile(r"[,;/\s]+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SourceUnavailableError(FileNotFoundError):
    """A required source file is missing. Aborts the run."""


class RowError(ValueError):
    """A single source row cannot be parsed. The row is skipped."""


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SeverityRow:
    crisis_id: str
    crisis_name: str
    country_name: str
    iso3: str
    drivers: str
    severity_index: float
    severity_category: str


@dataclass(frozen=True)
class FundingRow:
    country_code: str
    plan_name: str
    year: int
    requirements: float
    funding: float

    @property
    def off_appeal(self) -> bool:
        return self.plan_name.strip().lower() in OFF_APPEAL_PLAN_NAMES


@dataclass(frozen=True)
class AllocationRow:
    year: int
    cbpf_name: str
    cluster: str
    total_allocations: float
    targeted_people: int
    reached_people: int


# ---------------------------------------------------------------------------
# Parse helpers
# ---------------------------------------------------------------------------

def read_csv(filepath: Path) -> list[dict[str, str]]:
    """Read a CSV file into a list of dicts. Missing file is fatal."""
    if not filepath.is_file():
        raise SourceUnavailableError(f"Source file not found: {filepath}")
    with open(filepath, newline="", encoding="utf-8-sig") as fh:
        return list(csv.DictReader(fh))


def cell(row: dict[str, Optional[str]], column: str) -> str:
    return (row.get(column) or "").strip()


def parse_float(val: str, context: str, *, default: Optional[float] = 0.0) -> float:
    """Parse a numeric cell. Blank → default; garbage or NaN/Inf → RowError."""
    val = (val or "").strip().replace(",", "")
    if not val:
        if default is None:
            raise RowError(f"Missing value in {context}")
        return default
    try:
        f = float(val)
    except ValueError:
        raise RowError(f"Non-numeric value '{val}' in {context}")
    if math.isnan(f) or math.isinf(f):
        raise RowError(f"NaN/Inf value in {context}")
    return f


def parse_int(val: str, context: str, *, default: Optional[int] = 0) -> int:
    f = parse_float(val, context, default=None if default is None else float(default))
    return int(f)


def split_iso3(raw: str) -> list[str]:
    """Split a packed ISO3 cell ("SDN, SSD" / "SDN;SSD" / "SDN/SSD") into codes."""
    seen: list[str] = []
    for token in _ISO3_SEPARATORS.split(raw or ""):
        code = token.strip().upper()
        if code and code not in seen:
            seen.append(code)
    return seen


def _parse_rows(filename: str, rows: list[dict[str, str]], parse) -> Iterator:
    """Apply parse() to each row, skipping and logging RowError.

    parse() returns an iterable of parsed rows (possibly empty).
    Line numbers count the header as line 1.
    """
    skipped = 0
    for line_no, row in enumerate(rows, start=2):
        try:
            yield from parse(row, f"{filename}:{line_no}")
        except RowError as exc:
            skipped += 1
            logger.warning("Skipping malformed row %s:%d: %s", filename, line_no, exc)
    if skipped:
        logger.warning("%s: %d malformed row(s) skipped", filename, skipped)


# ---------------------------------------------------------------------------
# Row parsers
# ---------------------------------------------------------------------------

def parse_severity_row(row: dict[str, str], context: str) -> list[SeverityRow]:
    """One CSV row → one SeverityRow per ISO3 code packed in the ISO3 cell."""
    crisis_id = cell(row, "CRISIS ID")
    if not crisis_id:
        raise RowError(f"Missing CRISIS ID in {context}")
    codes = split_iso3(cell(row, "ISO3"))
    if not codes:
        raise RowError(f"Missing ISO3 in {context}")
    severity = parse_float(cell(row, "INFORM Severity Index"), context, default=None)

    return [
        SeverityRow(
            crisis_id=crisis_id,
            crisis_name=cell(row, "CRISIS") or crisis_id,
            country_name=cell(row, "COUNTRY"),
            iso3=code,
            drivers=cell(row, "DRIVERS"),
            severity_index=severity,
            severity_category=cell(row, "INFORM Severity category"),
        )
        for code in codes
    ]


def parse_funding_row(row: dict[str, str], context: str, target_year: int) -> list[FundingRow]:
    code = cell(row, "countryCode")
    if code.startswith(HXL_TAG_PREFIX):
        return []
    if len(code) != 3 or not code.isalpha():
        raise RowError(f"Invalid countryCode '{code}' in {context}")
    year = parse_int(cell(row, "year"), context, default=None)
    if year != target_year:
        return []
    return [
        FundingRow(
            country_code=code.upper(),
            plan_name=cell(row, "name"),
            year=year,
            requirements=parse_float(cell(row, "requirements"), context),
            funding=parse_float(cell(row, "funding"), context),
        )
    ]


def parse_allocation_row(row: dict[str, str], context: str, target_year: int) -> list[AllocationRow]:
    name = cell(row, "CBPF Name")
    if not name:
        raise RowError(f"Missing CBPF Name in {context}")
    year = parse_int(cell(row, "Year"), context, default=None)
    if year != target_year:
        return []
    return [
        AllocationRow(
            year=year,
            cbpf_name=name,
            cluster=cell(row, "Cluster"),
            total_allocations=parse_float(cell(row, "Total Allocations"), context),
            targeted_people=parse_int(cell(row, "Targeted People"), context),
            reached_people=parse_int(cell(row, "Reached People"), context),
        )
    ]


# ---------------------------------------------------------------------------
# Per-country aggregation
# ---------------------------------------------------------------------------

def aggregate_funding(rows: Iterable[FundingRow]) -> dict[str, CountryFunding]:
    """Sum plan lines per country, splitting on- and off-appeal funding.

    Each line is clamped before summing so a negative placeholder never
    cancels out real amounts.
    """
    totals: OrderedDict[str, list[float]] = OrderedDict()
    for r in rows:
        requirements = clamp_amount(r.requirements, "requirements", r.country_code)
        funding = clamp_amount(r.funding, "funding", r.country_code)
        t = totals.setdefault(r.country_code, [0.0, 0.0, 0.0, 0])
        t[0] += requirements
        if r.off_appeal:
            t[2] += funding
        else:
            t[1] += funding
            t[3] += 1

    return {
        code: CountryFunding(
            country_code=code,
            requirements=round(req, ROUND_PRECISION),
            on_appeal_funding=round(on, ROUND_PRECISION),
            off_appeal_funding=round(off, ROUND_PRECISION),
            plan_count=int(plans),
        )
        for code, (req, on, off, plans) in totals.items()
    }


def aggregate_allocations(
    rows: Iterable[AllocationRow],
    geo: CountryReference,
) -> dict[str, CountryAllocation]:
    """Sum pooled-fund rows per resolved ISO3. Unresolvable fund names are dropped.

    Amounts and people counts are clamped per row, as in aggregate_funding().
    """
    grouped: OrderedDict[str, list[AllocationRow]] = OrderedDict()
    unresolved: set[str] = set()
    for r in rows:
        code = geo.resolve_iso3(parse_cbpf_country_name(r.cbpf_name))
        if not code:
            unresolved.add(r.cbpf_name)
            continue
        grouped.setdefault(code, []).append(replace(
            r,
            total_allocations=clamp_amount(r.total_allocations, "total_allocations", code),
            targeted_people=clamp_count(r.targeted_people, "targeted_people", code),
            reached_people=clamp_count(r.reached_people, "reached_people", code),
        ))

    for name in sorted(unresolved):
        logger.warning("Pooled fund '%s' does not resolve to a country; dropped", name)

    return {
        code: CountryAllocation(
            country_code=code,
            fund_names=tuple(sorted({r.cbpf_name for r in clusters})),
            total_allocations=round(sum(r.total_allocations for r in clusters), ROUND_PRECISION),
            targeted_people=sum(r.targeted_people for r in clusters),
            reached_people=sum(r.reached_people for r in clusters),
            cluster_count=len(clusters),
        )
        for code, clusters in grouped.items()
    }


# ---------------------------------------------------------------------------
# Collaborator interface
# ---------------------------------------------------------------------------

class DataSources(Protocol):
    """What the aggregation driver needs from the outside world."""

    target_year: int

    def geography(self) -> CountryReference: ...

    def severity_rows(self) -> list[SeverityRow]: ...

    def funding_rows(self) -> list[FundingRow]: ...

    def allocation_rows(self) -> list[AllocationRow]: ...


class CsvDataSources:
    """DataSources backed by CSV/GeoJSON exports in one directory."""

    def __init__(self, data_dir: Path | str, target_year: int = TARGET_YEAR) -> None:
        self.data_dir = Path(data_dir)
        self.target_year = target_year

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    def geography(self) -> CountryReference:
        path = self._path(GEOGRAPHY_FILE)
        if not path.is_file():
            raise SourceUnavailableError(f"Source file not found: {path}")
        return load_geography(path)

    def severity_rows(self) -> list[SeverityRow]:
        rows = read_csv(self._path(SEVERITY_FILE))
        parsed = list(_parse_rows(SEVERITY_FILE, rows, parse_severity_row))
        logger.info("%s: %d severity entries from %d rows", SEVERITY_FILE, len(parsed), len(rows))
        return parsed

    def funding_rows(self) -> list[FundingRow]:
        rows = read_csv(self._path(FUNDING_FILE))
        parsed = list(_parse_rows(
            FUNDING_FILE, rows,
            lambda row, ctx: parse_funding_row(row, ctx, self.target_year),
        ))
        logger.info("%s: %d plan lines for %d", FUNDING_FILE, len(parsed), self.target_year)
        return parsed

    def allocation_rows(self) -> list[AllocationRow]:
        rows = read_csv(self._path(ALLOCATION_FILE))
        parsed = list(_parse_rows(
            ALLOCATION_FILE, rows,
            lambda row, ctx: parse_allocation_row(row, ctx, self.target_year),
        ))
        logger.info("%s: %d allocation rows for %d", ALLOCATION_FILE, len(parsed), self.target_year)
        return parsed


@dataclass
class StaticDataSources:
    """DataSources over rows already in memory."""

    geo: CountryReference = field(default_factory=CountryReference)
    severity: list[SeverityRow] = field(default_factory=list)
    funding: list[FundingRow] = field(default_factory=list)
    allocations: list[AllocationRow] = field(default_factory=list)
    target_year: int = TARGET_YEAR

    def geography(self) -> CountryReference:
        return self.geo

    def severity_rows(self) -> list[SeverityRow]:
        return list(self.severity)

    def funding_rows(self) -> list[FundingRow]:
        return [r for r in self.funding if r.year == self.target_year]

    def allocation_rows(self) -> list[AllocationRow]:
        return [r for r in self.allocations if r.year == self.target_year]
