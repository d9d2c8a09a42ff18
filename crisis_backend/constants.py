"""
crisis_backend.constants — Single source of truth for neglect-engine constants.

Every module that needs these values MUST import from here.
No hardcoded duplicates anywhere in the codebase.

Runtime configuration (paths, env) does not belong here; it lives next to
the code that reads it.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Precision
# ---------------------------------------------------------------------------

ROUND_PRECISION: int = 8
"""Every derived float is rounded to ROUND_PRECISION decimal places once,
at the point it is computed, BEFORE ranking, sorting, hashing or JSON
serialization. Python's round() (half-to-even)."""

# ---------------------------------------------------------------------------
# Snapshot scope
# ---------------------------------------------------------------------------

TARGET_YEAR: int = 2025
"""Single-year snapshot. Funding and pooled-fund rows of other years are
dropped by the loaders."""

SNAPSHOT_VERSION: str = "neglect-v1"
"""Wire-format version tag written into snapshot metadata."""

# ---------------------------------------------------------------------------
# Severity scale (INFORM)
# ---------------------------------------------------------------------------

SEVERITY_MIN: float = 0.0
SEVERITY_MAX: float = 5.0

SEVERITY_CATEGORIES: tuple[str, ...] = (
    "Very Low",
    "Low",
    "Medium",
    "High",
    "Very High",
)

# Lower bound of each category band, descending. Used only when the source
# row carries no usable category text.
SEVERITY_CATEGORY_BANDS: list[tuple[float, str]] = [
    (4.0, "Very High"),
    (3.0, "High"),
    (2.0, "Medium"),
    (1.0, "Low"),
]
SEVERITY_CATEGORY_DEFAULT: str = "Very Low"

# ---------------------------------------------------------------------------
# Neglect index
# ---------------------------------------------------------------------------

REQUIREMENTS_SCALE: float = 1_000_000.0
"""Requirements are expressed in US$ millions inside the log term."""

# ---------------------------------------------------------------------------
# Anomaly detection: percentile thresholds (0–100 scale)
# ---------------------------------------------------------------------------

P_CRITICAL: float = 5.0
"""Bottom 5 % (low direction) or top 5 % (high direction) → critical."""

P_WARNING: float = 10.0
"""Bottom 10 % / top 10 % band not already critical → warning."""

MIN_COHORT: int = 5
"""Below this many candidates a metric is skipped for the run."""

SINGLE_MEMBER_RANK: float = 50.0
"""Percentile rank of the only member of a one-element cohort."""

SEVERITY_CRITICAL: str = "critical"
SEVERITY_WARNING: str = "warning"

VALID_ANOMALY_SEVERITIES: frozenset[str] = frozenset({
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
})

DIRECTION_LOW: str = "low"
DIRECTION_HIGH: str = "high"

# ---------------------------------------------------------------------------
# Funding source conventions (FTS)
# ---------------------------------------------------------------------------

OFF_APPEAL_PLAN_NAMES: frozenset[str] = frozenset({"", "not specified"})
"""Plan names that mark a funding row as off-appeal (no formal plan)."""

HXL_TAG_PREFIX: str = "#"

# ---------------------------------------------------------------------------
# Crisis categories: keyword patterns over crisis name + driver text
# ---------------------------------------------------------------------------

CRISIS_CATEGORY_PATTERNS: tuple[tuple[str, str], ...] = (
    ("Conflict", r"conflict|armed|war|violence|attack|militant|rebel|coup|fighting|hostil"),
    ("Food Crisis", r"food|hunger|famine|malnutrit|starv"),
    ("Drought", r"drought|dry"),
    ("Natural Disaster", r"flood|cyclone|typhoon|hurricane|storm|tsunami"),
    ("Natural Disaster", r"earthquake|volcanic|eruption|landslide"),
    ("Displacement", r"displace|refugee|idp|migration|forced movement"),
    ("Disease", r"disease|epidemic|pandemic|health|cholera|malaria|ebola|outbreak"),
    ("Economic Crisis", r"economic|financial|poverty|inflation|livelihood"),
    ("Political Crisis", r"political|governance|instability"),
    ("Climate", r"climate|climatic|environment|deforestation"),
)
