"""
crisis_backend.hashing — Deterministic computation hashing for snapshots.

Provides canonical float formatting, per-record computation hashes, and
snapshot-level hashes. All hash inputs are human-readable text,
inspectable for debugging.

Design contract:
    - canonical_float() produces identical output across CPython versions.
    - compute_record_hash() is deterministic for identical inputs.
    - compute_snapshot_hash() is deterministic for identical record hashes.
    - Hash inputs include EVERY value that ends up in the record.
    - Absent values hash as "null", never as 0.
"""

from __future__ import annotations

import hashlib
from typing import Optional

from crisis_backend.constants import ROUND_PRECISION
from crisis_backend.models import CountryCrisisRecord


def canonical_float(value: Optional[float]) -> str:
    """Convert a rounded float to its canonical string representation for hashing.

    Fixed-point notation with exactly ROUND_PRECISION decimal places.
    None → "null".

    Examples (ROUND_PRECISION=8):
        canonical_float(0.5)  → "0.50000000"
        canonical_float(0.0)  → "0.00000000"
        canonical_float(None) → "null"
    """
    if value is None:
        return "null"
    return f"{value:.{ROUND_PRECISION}f}"


def record_key(record: CountryCrisisRecord) -> str:
    """Stable identity of a record inside a snapshot."""
    return f"{record.crisis_id}/{record.country_code}"


def compute_record_hash(record: CountryCrisisRecord, target_year: int) -> str:
    """SHA-256 of one (crisis, country) record, its indices and anomaly flags.

    Properties:
        - Canonical order: index fields alphabetical, anomalies in record order.
        - Newline-terminated: every field on its own line.
        - Encoding: UTF-8.
    """
    parts = [
        f"crisis={record.crisis_id}",
        f"country={record.country_code}",
        f"year={target_year}",
        f"severity={canonical_float(record.severity_index)}",
        f"category={record.severity_category}",
        f"requirements={canonical_float(record.funding_requirements)}",
        f"received={canonical_float(record.funding_received)}",
        f"off_appeal={canonical_float(record.off_appeal_funding)}",
        f"allocations={canonical_float(record.pooled_fund_allocations)}",
        f"targeted={record.targeted_population}",
        f"reached={record.reached_population}",
    ]

    indices = record.indices.model_dump()
    for name in sorted(indices):
        parts.append(f"index.{name}={canonical_float(indices[name])}")

    for a in record.anomalies:
        parts.append(
            f"anomaly={a.metric}:{a.severity}:{a.direction}:"
            f"{canonical_float(a.value)}:{canonical_float(a.percentile_rank)}"
        )

    hash_input = "\n".join(parts) + "\n"
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


def compute_snapshot_hash(record_hashes: dict[str, str]) -> str:
    """Compute the snapshot-level hash from all per-record hashes.

    Args:
        record_hashes: {record_key: hex_hash}

    Returns:
        SHA-256 hex digest over "key=hash" lines in sorted key order.
        An empty snapshot hashes the empty string.
    """
    parts = [f"{key}={record_hashes[key]}" for key in sorted(record_hashes)]
    hash_input = "\n".join(parts) + "\n" if parts else ""
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()
