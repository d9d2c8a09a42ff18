#!/usr/bin/env python3
"""
export_snapshot.py — Neglect Snapshot Materializer

Runs one aggregation over the source exports in a data directory and
writes an atomic, immutable snapshot to:

    {snapshot_root}/{SNAPSHOT_VERSION}/{year}/
        snapshot.json          full snapshot (camelCase wire format)
        country/{ISO3}.json    one profile per country in crisis
        MANIFEST.json          SHA-256 of every data file
        HASH_SUMMARY.json      per-record and snapshot computation hashes

Usage:
    python -m crisis_backend.export_snapshot --data-dir data --year 2025
    python -m crisis_backend.export_snapshot --data-dir data --year 2025 --force

Protocol:
    1. Write to .tmp_{version}_{year}_{uuid}/
    2. Verify MANIFEST hashes and hash reproducibility.
    3. Write HASH_SUMMARY.json (last file).
    4. Atomic os.rename() to final directory.
    5. Set files read-only (chmod 0o444).

Hard constraints:
    - All JSON written with sort_keys=True.
    - If snapshot directory already exists → abort (freeze policy).
    - If any hash mismatch → abort.
"""

from __future__ import annotations

import argparse
import hashlib
import json
import os
import shutil
import stat
import sys
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from crisis_backend.aggregate import aggregate, compute_hashes
from crisis_backend.constants import ROUND_PRECISION, SNAPSHOT_VERSION, TARGET_YEAR
from crisis_backend.models import CountryCrisisRecord, Snapshot
from crisis_backend.sources import CsvDataSources, SourceUnavailableError

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_ROOT = Path(os.getenv("CRISIS_DATA_DIR", str(PROJECT_ROOT / "data")))
SNAPSHOTS_ROOT = Path(os.getenv("CRISIS_SNAPSHOT_DIR", str(PROJECT_ROOT / "snapshots")))
DEFAULT_YEAR = int(os.getenv("CRISIS_TARGET_YEAR", str(TARGET_YEAR)))

SNAPSHOT_FILE = "snapshot.json"
MANIFEST_FILE = "MANIFEST.json"
HASH_SUMMARY_FILE = "HASH_SUMMARY.json"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fatal(msg: str) -> None:
    """Print error and exit."""
    print(f"FATAL: {msg}", file=sys.stderr)
    sys.exit(1)


def write_canonical_json(filepath: Path, data: object) -> None:
    """Write JSON in canonical form: sort_keys=True, UTF-8, trailing newline.

    This is NOT atomic by itself; materialize_snapshot() wraps it in the
    temp-dir → rename protocol.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
    content += "\n"
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(content)


def sha256_file(filepath: Path) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(filepath, "rb") as fh:
        while True:
            chunk = fh.read(65536)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def snapshot_records(snapshot: Snapshot) -> Iterator[CountryCrisisRecord]:
    for crisis in snapshot.crises:
        yield from crisis.countries


def snapshot_dir_for(snapshot_root: Path, year: int, version: str = SNAPSHOT_VERSION) -> Path:
    return snapshot_root / version / str(year)


# ---------------------------------------------------------------------------
# MANIFEST generation
# ---------------------------------------------------------------------------

def generate_manifest(snapshot_dir: Path) -> dict:
    """MANIFEST.json for a snapshot directory.

    SHA-256 for every JSON file except MANIFEST.json and HASH_SUMMARY.json.
    """
    files = []
    for filepath in sorted(snapshot_dir.rglob("*.json")):
        rel = filepath.relative_to(snapshot_dir)
        if rel.name in (MANIFEST_FILE, HASH_SUMMARY_FILE):
            continue
        files.append({
            "path": rel.as_posix(),
            "sha256": sha256_file(filepath),
            "size_bytes": filepath.stat().st_size,
        })

    return {
        "schema_version": 1,
        "generated_at": datetime.now(UTC).isoformat(),
        "generator": "export_snapshot.py",
        "file_count": len(files),
        "files": files,
    }


# ---------------------------------------------------------------------------
# Filesystem protection
# ---------------------------------------------------------------------------

_READONLY_DIR = (
    stat.S_IRUSR | stat.S_IXUSR |
    stat.S_IRGRP | stat.S_IXGRP |
    stat.S_IROTH | stat.S_IXOTH
)  # 0o555


def make_readonly(directory: Path) -> None:
    """Remove write permissions from all files in a snapshot directory."""
    for f in directory.rglob("*"):
        if f.is_file():
            f.chmod(stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)  # 0o444
    for d in directory.rglob("*"):
        if d.is_dir():
            d.chmod(_READONLY_DIR)
    directory.chmod(_READONLY_DIR)


def make_writable(directory: Path) -> None:
    for d in [directory] + list(directory.rglob("*")):
        if d.is_dir():
            d.chmod(stat.S_IRWXU)
    for f in directory.rglob("*"):
        if f.is_file():
            f.chmod(stat.S_IWUSR | stat.S_IRUSR)


def cleanup_partial_snapshots(snapshot_root: Path = SNAPSHOTS_ROOT) -> int:
    """Remove any temp directories from failed materializations."""
    removed = 0
    if not snapshot_root.is_dir():
        return removed
    for d in snapshot_root.iterdir():
        if d.is_dir() and d.name.startswith(".tmp_"):
            shutil.rmtree(d, ignore_errors=True)
            removed += 1
    return removed


# ---------------------------------------------------------------------------
# Main materialization
# ---------------------------------------------------------------------------

def materialize_snapshot(
    snapshot: Snapshot,
    snapshot_root: Path = SNAPSHOTS_ROOT,
    *,
    force: bool = False,
    verbose: bool = True,
) -> Path:
    """Write an aggregated snapshot to disk atomically.

    Returns the final snapshot directory path. Raises FileExistsError when
    the snapshot already exists and force is not set; RuntimeError on any
    verification failure. The temp directory is removed on failure.
    """
    def say(msg: str = "") -> None:
        if verbose:
            print(msg)

    final_dir = snapshot_dir_for(snapshot_root, snapshot.target_year, snapshot.version)

    # ── FREEZE ENFORCEMENT ──
    if final_dir.exists() and not force:
        raise FileExistsError(
            f"FREEZE VIOLATION: Snapshot {snapshot.version}/{snapshot.target_year} "
            f"already exists at {final_dir}. Published snapshots are immutable. "
            f"Use --force to override (development only)."
        )

    if final_dir.exists() and force:
        say(f"  WARNING: --force specified. Removing existing snapshot at {final_dir}")
        make_writable(final_dir)
        shutil.rmtree(final_dir)

    # ── HASHES ──
    record_hashes, snapshot_hash = compute_hashes(snapshot_records(snapshot), snapshot.target_year)
    if snapshot_hash != snapshot.snapshot_hash:
        raise RuntimeError("Snapshot hash does not match its records: determinism violation")

    # ── TEMP DIRECTORY ──
    temp_name = f".tmp_{snapshot.version}_{snapshot.target_year}_{uuid.uuid4().hex[:8]}"
    temp_dir = snapshot_root / temp_name
    temp_dir.mkdir(parents=True, exist_ok=False)

    try:
        say("Writing snapshot files...")
        write_canonical_json(temp_dir / SNAPSHOT_FILE, snapshot.to_wire())
        say(f"  {SNAPSHOT_FILE} ({len(snapshot.crises)} crises)")

        for code, profile in snapshot.countries.items():
            write_canonical_json(
                temp_dir / "country" / f"{code}.json",
                profile.model_dump(mode="json", by_alias=True),
            )
        say(f"  country/*.json ({len(snapshot.countries)} files)")

        manifest = generate_manifest(temp_dir)
        write_canonical_json(temp_dir / MANIFEST_FILE, manifest)
        say(f"  {MANIFEST_FILE} ({manifest['file_count']} files tracked)")

        # ── VERIFY ──
        for entry in manifest["files"]:
            if sha256_file(temp_dir / entry["path"]) != entry["sha256"]:
                raise RuntimeError(f"MANIFEST hash mismatch: {entry['path']}")

        reloaded = Snapshot.model_validate_json((temp_dir / SNAPSHOT_FILE).read_text(encoding="utf-8"))
        _, reloaded_hash = compute_hashes(snapshot_records(reloaded), reloaded.target_year)
        if reloaded_hash != snapshot_hash:
            raise RuntimeError("Snapshot hash is NOT reproducible from snapshot.json")
        say("  Verification: manifest and hash reproducibility OK")

        # HASH_SUMMARY.json (LAST file written)
        hash_summary: dict[str, Any] = {
            "schema_version": 1,
            "year": snapshot.target_year,
            "snapshot_version": snapshot.version,
            "snapshot_hash": snapshot_hash,
            "computed_at": datetime.now(UTC).isoformat(),
            "computed_by": "export_snapshot.py",
            "round_precision": ROUND_PRECISION,
            "record_hashes": record_hashes,
        }
        write_canonical_json(temp_dir / HASH_SUMMARY_FILE, hash_summary)

        # ── ATOMIC PROMOTION ──
        final_dir.parent.mkdir(parents=True, exist_ok=True)
        os.rename(temp_dir, final_dir)
        make_readonly(final_dir)
        say(f"  Promoted {temp_dir.name} → {final_dir} (read-only)")

    except Exception:
        if temp_dir.exists():
            shutil.rmtree(temp_dir, ignore_errors=True)
        raise

    say()
    say("═" * 60)
    say(f"  SNAPSHOT MATERIALIZED: {snapshot.version}/{snapshot.target_year}")
    say(f"  Location:      {final_dir}")
    say(f"  Snapshot hash: {snapshot_hash}")
    say("═" * 60)
    return final_dir


def export(data_dir: Path, year: int, snapshot_root: Path, *, force: bool = False) -> Path:
    """Aggregate the sources in data_dir and materialize the result."""
    print(f"Aggregating {data_dir} for {year}...")
    snapshot = aggregate(CsvDataSources(data_dir, target_year=year))
    print(f"  {len(snapshot.crises)} crises, {len(snapshot.countries)} countries")
    print(f"  Snapshot hash: {snapshot.snapshot_hash[:16]}...")
    print()
    return materialize_snapshot(snapshot, snapshot_root, force=force)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Neglect Snapshot Materializer: produces immutable snapshot directories.",
    )
    parser.add_argument("--data-dir", type=Path, default=DATA_ROOT, help="Directory with the source exports")
    parser.add_argument("--year", type=int, default=DEFAULT_YEAR, help=f"Target year (default {DEFAULT_YEAR})")
    parser.add_argument("--snapshot-root", type=Path, default=SNAPSHOTS_ROOT, help="Snapshot output root")
    parser.add_argument("--force", action="store_true", help="Override freeze protection (development only)")
    parser.add_argument("--cleanup", action="store_true", help="Clean up partial snapshots before materializing")

    args = parser.parse_args(argv)

    if args.cleanup:
        removed = cleanup_partial_snapshots(args.snapshot_root)
        print(f"Cleaned up {removed} partial snapshot(s)" if removed else "No partial snapshots found")
        print()

    try:
        export(args.data_dir, args.year, args.snapshot_root, force=args.force)
    except (SourceUnavailableError, FileExistsError) as exc:
        fatal(str(exc))


if __name__ == "__main__":
    main()
