"""
crisis_backend.models — Record model for the neglect engine.

Pydantic models for everything that ends up in a published snapshot:
per-country funding and pooled-fund aggregates, the per-(country, crisis)
record with its derived indices and anomaly flags, crisis groupings,
global roll-up statistics, and the snapshot envelope itself.

Validation contract (CountryCrisisRecord):
    - severity_index outside [0, 5] or non-finite → rejected (ValidationError)
    - country_code not three letters → rejected
    - negative or non-finite money / population → clamped to 0, logged WARNING
      (upstream data carries placeholder negatives)
    - unknown or blank severity_category → derived from the index band

All models are frozen. Derived fields and anomalies are attached with
model_copy(update=...), never by mutation.

Wire format: camelCase aliases (countryCode, fundingGapPerCapita, ...).
Python code uses snake_case field names; both are accepted on input.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from crisis_backend.constants import (
    SEVERITY_CATEGORIES,
    SEVERITY_CATEGORY_BANDS,
    SEVERITY_CATEGORY_DEFAULT,
    SEVERITY_MAX,
    SEVERITY_MIN,
    SNAPSHOT_VERSION,
)

logger = logging.getLogger("crisis.models")

_FROZEN = ConfigDict(
    frozen=True,
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)

_CATEGORY_LOOKUP: dict[str, str] = {c.lower(): c for c in SEVERITY_CATEGORIES}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def clamp_amount(value: Any, field: str, country: str | None) -> float:
    """Coerce a monetary amount to a finite, non-negative float.

    Unparseable input raises ValueError (the record is rejected).
    Negative or non-finite input is clamped to 0.0 with a warning.
    """
    if value is None or value == "":
        return 0.0
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field}: non-numeric value {value!r}")
    if math.isnan(f) or math.isinf(f):
        logger.warning("Non-finite %s=%r for %s clamped to 0", field, value, country or "?")
        return 0.0
    if f < 0.0:
        logger.warning("Negative %s=%r for %s clamped to 0", field, value, country or "?")
        return 0.0
    return f


def clamp_count(value: Any, field: str, country: str | None) -> int:
    """Coerce a population count to a non-negative int (same rules as amounts)."""
    return int(clamp_amount(value, field, country))


def normalize_country_code(value: Any) -> str:
    """Strip and upper-case an ISO3 code. Raises ValueError if not 3 letters."""
    if value is None:
        raise ValueError("country_code must not be null.")
    code = str(value).strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"country_code must be 3 letters (ISO3): {value!r}")
    return code


def category_for_index(severity_index: float) -> str:
    """Severity category band for an INFORM index value."""
    for lower, label in SEVERITY_CATEGORY_BANDS:
        if severity_index >= lower:
            return label
    return SEVERITY_CATEGORY_DEFAULT


# ---------------------------------------------------------------------------
# Per-country source aggregates
# ---------------------------------------------------------------------------

class CountryFunding(BaseModel):
    """Appeal funding for one country, summed over all plan lines of the year."""

    model_config = _FROZEN

    country_code: str
    requirements: float = 0.0
    on_appeal_funding: float = 0.0
    off_appeal_funding: float = 0.0
    plan_count: int = 0

    @field_validator("country_code", mode="before")
    @classmethod
    def _code(cls, v: Any) -> str:
        return normalize_country_code(v)

    @field_validator("requirements", "on_appeal_funding", "off_appeal_funding", mode="before")
    @classmethod
    def _amounts(cls, v: Any, info: ValidationInfo) -> float:
        return clamp_amount(v, info.field_name, info.data.get("country_code"))

    @property
    def total_funding_all(self) -> float:
        return self.on_appeal_funding + self.off_appeal_funding


class CountryAllocation(BaseModel):
    """Pooled-fund (CBPF) allocations for one country, summed over clusters."""

    model_config = _FROZEN

    country_code: str
    fund_names: Tuple[str, ...] = ()
    total_allocations: float = 0.0
    targeted_people: int = 0
    reached_people: int = 0
    cluster_count: int = 0

    @field_validator("country_code", mode="before")
    @classmethod
    def _code(cls, v: Any) -> str:
        return normalize_country_code(v)

    @field_validator("total_allocations", mode="before")
    @classmethod
    def _amount(cls, v: Any, info: ValidationInfo) -> float:
        return clamp_amount(v, info.field_name, info.data.get("country_code"))

    @field_validator("targeted_people", "reached_people", mode="before")
    @classmethod
    def _counts(cls, v: Any, info: ValidationInfo) -> int:
        return clamp_count(v, info.field_name, info.data.get("country_code"))


# ---------------------------------------------------------------------------
# Derived indices and anomaly flags
# ---------------------------------------------------------------------------

class DerivedIndices(BaseModel):
    """Computed per-record metrics. None means undefined, never zero."""

    model_config = _FROZEN

    percent_funded: Optional[float] = None
    funding_gap: Optional[float] = 0.0
    funding_gap_per_capita: Optional[float] = 0.0
    neglect_index: Optional[float] = None
    reach_ratio: Optional[float] = None
    cbpf_dependency: Optional[float] = None
    percent_funded_all: Optional[float] = None
    off_appeal_share: Optional[float] = None
    dollar_per_person: Optional[float] = None
    cost_per_reached: Optional[float] = None


class Anomaly(BaseModel):
    """One percentile-based outlier finding for one metric."""

    model_config = _FROZEN

    metric: str
    description: str
    value: float
    percentile_rank: float
    direction: Literal["low", "high"]
    severity: Literal["critical", "warning"]

    @property
    def tail_distance(self) -> float:
        """Distance from the tail of concern: 0 is the most extreme finding."""
        if self.direction == "low":
            return self.percentile_rank
        return 100.0 - self.percentile_rank


# ---------------------------------------------------------------------------
# CountryCrisisRecord
# ---------------------------------------------------------------------------

class CountryCrisisRecord(BaseModel):
    """One country appearing in one crisis, with raw and derived fields."""

    model_config = _FROZEN

    country_code: str
    country_name: str = ""
    crisis_id: str
    crisis_name: str = ""
    drivers: str = ""
    severity_index: float
    severity_category: str = ""
    funding_requirements: float = 0.0
    funding_received: float = 0.0
    off_appeal_funding: float = 0.0
    pooled_fund_allocations: float = 0.0
    targeted_population: int = 0
    reached_population: int = 0
    indices: DerivedIndices = Field(default_factory=DerivedIndices)
    anomalies: Tuple[Anomaly, ...] = ()

    @field_validator("country_code", mode="before")
    @classmethod
    def _code(cls, v: Any) -> str:
        return normalize_country_code(v)

    @field_validator("severity_index", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> float:
        try:
            f = float(v)
        except (TypeError, ValueError):
            raise ValueError(f"severity_index: non-numeric value {v!r}")
        if math.isnan(f) or math.isinf(f):
            raise ValueError("severity_index must be finite.")
        if f < SEVERITY_MIN or f > SEVERITY_MAX:
            raise ValueError(
                f"severity_index {f} outside [{SEVERITY_MIN}, {SEVERITY_MAX}]."
            )
        return f

    @field_validator(
        "funding_requirements",
        "funding_received",
        "off_appeal_funding",
        "pooled_fund_allocations",
        mode="before",
    )
    @classmethod
    def _amounts(cls, v: Any, info: ValidationInfo) -> float:
        return clamp_amount(v, info.field_name, info.data.get("country_code"))

    @field_validator("targeted_population", "reached_population", mode="before")
    @classmethod
    def _counts(cls, v: Any, info: ValidationInfo) -> int:
        return clamp_count(v, info.field_name, info.data.get("country_code"))

    @model_validator(mode="after")
    def _normalize_category(self) -> CountryCrisisRecord:
        label = _CATEGORY_LOOKUP.get(self.severity_category.strip().lower())
        if label is None:
            label = category_for_index(self.severity_index)
        if label != self.severity_category:
            # frozen model: bypass __setattr__ during validation
            object.__setattr__(self, "severity_category", label)
        if not self.country_name:
            object.__setattr__(self, "country_name", self.country_code)
        return self


# ---------------------------------------------------------------------------
# Crisis grouping, country profiles, roll-up
# ---------------------------------------------------------------------------

class Crisis(BaseModel):
    """A crisis and its country records, ordered by neglect index."""

    model_config = _FROZEN

    crisis_id: str
    crisis_name: str
    categories: Tuple[str, ...] = ()
    countries: Tuple[CountryCrisisRecord, ...] = ()


class CountryProfile(BaseModel):
    """Cross-crisis view of one country."""

    model_config = _FROZEN

    country_code: str
    country_name: str
    severity_index: Optional[float] = None
    severity_category: Optional[str] = None
    crisis_ids: Tuple[str, ...] = ()
    funding: Optional[CountryFunding] = None
    allocation: Optional[CountryAllocation] = None
    anomalies: Tuple[Anomaly, ...] = ()


class GlobalStats(BaseModel):
    """Population-wide roll-up totals."""

    model_config = _FROZEN

    total_requirements: float = 0.0
    total_funding: float = 0.0
    total_off_appeal_funding: float = 0.0
    total_cbpf_allocations: float = 0.0
    percent_funded: Optional[float] = None
    countries_in_crisis: int = 0
    active_crisis_count: int = 0
    critical_anomaly_count: int = 0
    warning_anomaly_count: int = 0


class Snapshot(BaseModel):
    """One complete, immutable aggregation result."""

    model_config = _FROZEN

    version: str = SNAPSHOT_VERSION
    target_year: int
    crises: Tuple[Crisis, ...] = ()
    countries: Dict[str, CountryProfile] = Field(default_factory=dict)
    stats: GlobalStats = Field(default_factory=GlobalStats)
    snapshot_hash: str = ""

    def crisis(self, crisis_id: str) -> Crisis | None:
        for c in self.crises:
            if c.crisis_id == crisis_id:
                return c
        return None

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
