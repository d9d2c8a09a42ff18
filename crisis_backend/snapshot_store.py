"""
crisis_backend.snapshot_store — Thread-safe holder of the published snapshot.

The store holds exactly one current Snapshot (or none). Readers get the
reference under a lock and then work on an immutable object, so they see
either the previous complete snapshot or the next one, never a half-built
result.

Design contract:
    - refresh() builds the new snapshot completely OUTSIDE the read lock,
      then swaps the reference in one step.
    - A failed refresh leaves the current snapshot in place and re-raises.
    - Refreshes are serialized; reads never wait on a running refresh.
    - load_from_dir() verifies MANIFEST.json hashes and the snapshot hash
      before publishing anything read from disk.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from crisis_backend.aggregate import aggregate, compute_hashes
from crisis_backend.constants import SNAPSHOT_VERSION
from crisis_backend.export_snapshot import (
    MANIFEST_FILE,
    SNAPSHOT_FILE,
    snapshot_records,
)
from crisis_backend.models import Snapshot
from crisis_backend.sources import DataSources

logger = logging.getLogger("crisis.store")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SnapshotIntegrityError(Exception):
    """A snapshot directory failed manifest or hash verification."""

    def __init__(self, snapshot_dir: Path, errors: list[str]) -> None:
        self.snapshot_dir = snapshot_dir
        self.errors = errors
        super().__init__(f"Snapshot at {snapshot_dir} failed verification: {'; '.join(errors)}")


# ---------------------------------------------------------------------------
# MANIFEST.json integrity verification
# ---------------------------------------------------------------------------

def _sha256_file(filepath: Path) -> str:
    h = hashlib.sha256()
    with open(filepath, "rb") as fh:
        while True:
            chunk = fh.read(65536)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def verify_manifest(snapshot_dir: Path) -> dict[str, Any]:
    """
    Verify SHA-256 hashes of snapshot artifacts against MANIFEST.json.

    Returns:
        {
            "manifest_present": bool,
            "verified": bool,        # True if all hashes match
            "errors": [str, ...],    # list of mismatch descriptions
            "files_checked": int,
        }
    """
    manifest_path = snapshot_dir / MANIFEST_FILE
    result: dict[str, Any] = {
        "manifest_present": False,
        "verified": False,
        "errors": [],
        "files_checked": 0,
    }

    if not manifest_path.is_file():
        result["errors"].append("MANIFEST.json missing")
        return result

    result["manifest_present"] = True

    try:
        with open(manifest_path, encoding="utf-8") as fh:
            manifest = json.load(fh)
    except (json.JSONDecodeError, OSError) as exc:
        result["errors"].append(f"Failed to read MANIFEST.json: {type(exc).__name__}")
        return result

    files_list = manifest.get("files", [])
    if not files_list:
        result["errors"].append("MANIFEST.json contains no file entries")
        return result

    for entry in files_list:
        rel_path = entry.get("path", "")
        expected_hash = entry.get("sha256", "")
        if not rel_path or not expected_hash:
            result["errors"].append(f"Invalid manifest entry: {entry}")
            continue

        file_path = snapshot_dir / rel_path
        if not file_path.is_file():
            result["errors"].append(f"Missing file: {rel_path}")
            continue

        actual_hash = _sha256_file(file_path)
        result["files_checked"] += 1
        if actual_hash != expected_hash:
            result["errors"].append(
                f"Hash mismatch: {rel_path} "
                f"(expected {expected_hash[:16]}..., got {actual_hash[:16]}...)"
            )

    result["verified"] = len(result["errors"]) == 0
    return result


def latest_snapshot_dir(snapshot_root: Path, version: str = SNAPSHOT_VERSION) -> Optional[Path]:
    """Most recent year directory under {snapshot_root}/{version}/, or None."""
    base = snapshot_root / version
    if not base.is_dir():
        return None
    years = sorted(
        (d for d in base.iterdir() if d.is_dir() and d.name.isdigit()),
        key=lambda d: int(d.name),
    )
    return years[-1] if years else None


def read_snapshot_dir(snapshot_dir: Path) -> Snapshot:
    """Load and verify a materialized snapshot directory."""
    check = verify_manifest(snapshot_dir)
    if not check["verified"]:
        raise SnapshotIntegrityError(snapshot_dir, check["errors"])

    snapshot = Snapshot.model_validate_json(
        (snapshot_dir / SNAPSHOT_FILE).read_text(encoding="utf-8")
    )
    _, recomputed = compute_hashes(snapshot_records(snapshot), snapshot.target_year)
    if recomputed != snapshot.snapshot_hash:
        raise SnapshotIntegrityError(
            snapshot_dir,
            [f"snapshot hash mismatch (stored {snapshot.snapshot_hash[:16]}..., "
             f"recomputed {recomputed[:16]}...)"],
        )
    return snapshot


# ---------------------------------------------------------------------------
# SnapshotStore
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PublishedSnapshot:
    snapshot: Snapshot
    published_at: str
    source: str


class SnapshotStore:
    """Holds the current snapshot and swaps it atomically.

    Usage::

        store = SnapshotStore()
        store.refresh(CsvDataSources(data_dir))
        snap = store.get()   # Snapshot | None
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._refresh_lock: threading.Lock = threading.Lock()
        self._current: Optional[PublishedSnapshot] = None

    def get(self) -> Optional[Snapshot]:
        with self._lock:
            return self._current.snapshot if self._current else None

    @property
    def info(self) -> Optional[PublishedSnapshot]:
        with self._lock:
            return self._current

    def publish(self, snapshot: Snapshot, source: str = "memory") -> None:
        """Swap in a fully-built snapshot."""
        published = PublishedSnapshot(
            snapshot=snapshot,
            published_at=datetime.now(UTC).isoformat(),
            source=source,
        )
        with self._lock:
            previous = self._current
            self._current = published
        logger.info(
            "Snapshot published: %s/%d hash=%s source=%s (previous=%s)",
            snapshot.version, snapshot.target_year, snapshot.snapshot_hash[:16], source,
            previous.snapshot.snapshot_hash[:16] if previous else None,
        )

    def refresh(self, sources: DataSources) -> Snapshot:
        """Run a full aggregation and publish the result.

        The previous snapshot stays in place if aggregation raises.
        """
        with self._refresh_lock:
            try:
                snapshot = aggregate(sources)
            except Exception:
                logger.exception("Snapshot refresh failed; keeping previous snapshot")
                raise
            self.publish(snapshot, source="aggregate")
            return snapshot

    def load_from_dir(self, snapshot_dir: Path) -> Snapshot:
        """Publish a verified snapshot read from disk."""
        with self._refresh_lock:
            snapshot = read_snapshot_dir(snapshot_dir)
            self.publish(snapshot, source=str(snapshot_dir))
            return snapshot

    def clear(self) -> None:
        with self._lock:
            self._current = None
