"""Offline manifest builder.

A build is a chain of small steps over an ordered in-memory sequence:
resolve scope, discover candidates, lock permissions, collect metadata,
assign identifiers, compose and emit. Each step lives in its own module
and can be exercised on its own. ``plan_build`` runs the checks that touch
nothing on disk; ``execute_build`` does the rest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from codexica.errors import ManifestBuildError
from codexica.filters import ScopeFilter
from codexica.hashing import ensure_capabilities
from codexica.identity import CarryForwardTable, assign_identifiers, load_carry_forward_table
from codexica.manifest_io import utc_timestamp, write_manifest_atomic
from codexica.models import Entry, HashRecord, Manifest, ManifestStats, ScannedEntry
from codexica.scanner import (
    discover_candidates,
    lock_down,
    relative_exclusions,
    resolve_scan_roots,
    scan_entries,
    scan_entries_with_progress,
)

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BuildResult:
    manifest: Manifest
    output: Path
    scan_roots: list[Path]
    scanned: list[ScannedEntry]
    prior_table: CarryForwardTable

    @property
    def carried_count(self) -> int:
        carried = set(self.prior_table.values())
        return sum(1 for entry in self.manifest.entries if entry.identifier in carried)


def parse_whitelist(value: str | None) -> list[str] | None:
    if value is None or not value.strip():
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def compose_manifest(entries: Iterable[Entry], *, generated_at: str) -> Manifest:
    ordered = sorted(entries, key=lambda entry: entry.path)
    seen_paths: set[str] = set()
    seen_ids: set[str] = set()
    for entry in ordered:
        if entry.path in seen_paths:
            raise ManifestBuildError(f"Duplicate path in manifest: {entry.path}")
        if entry.identifier in seen_ids:
            raise ManifestBuildError(f"Duplicate identifier in manifest: {entry.identifier}")
        seen_paths.add(entry.path)
        seen_ids.add(entry.identifier)
    return Manifest(
        generated_at=generated_at,
        entries=tuple(ordered),
        stats=ManifestStats.from_entries(ordered),
    )


@dataclass(slots=True)
class BuildPlan:
    """Everything a build needs, checked before the tree is touched."""

    root: Path
    output: Path
    prior_table: CarryForwardTable
    scan_roots: list[Path]
    excluded: set[str]
    scope_filter: ScopeFilter | None
    lockdown: bool


def plan_build(
    root: Path,
    output: Path,
    *,
    prior: Path | None = None,
    whitelist: Iterable[str] | None = None,
    scope_filter: ScopeFilter | None = None,
    lockdown: bool = True,
    exclude_paths: Iterable[Path] = (),
) -> BuildPlan:
    # Everything that can fail without touching the tree runs here.
    ensure_capabilities(lockdown=lockdown)

    if not root.is_dir():
        raise ManifestBuildError(f"ROOT is not a directory: {root}")
    root = root.resolve()

    prior_table = load_carry_forward_table(prior) if prior is not None else {}

    scan_roots = resolve_scan_roots(root, list(whitelist) if whitelist is not None else None)
    if not scan_roots:
        raise ManifestBuildError("Nothing to scan (empty whitelist?)")

    return BuildPlan(
        root=root,
        output=output,
        prior_table=prior_table,
        scan_roots=scan_roots,
        excluded=relative_exclusions(root, [output, prior, *exclude_paths]),
        scope_filter=scope_filter,
        lockdown=lockdown,
    )


def execute_build(
    plan: BuildPlan,
    *,
    previous_hashes: dict[str, HashRecord] | None = None,
    console: "Console | None" = None,
    now: datetime | None = None,
) -> BuildResult:
    candidates = discover_candidates(
        plan.root, plan.scan_roots, excluded=plan.excluded, scope_filter=plan.scope_filter
    )
    logger.info("Discovered %d entries under %s", len(candidates), plan.root)

    if plan.lockdown:
        lock_down(candidates)

    if console is not None:
        scanned = scan_entries_with_progress(candidates, previous_hashes=previous_hashes, console=console)
    else:
        scanned = scan_entries(candidates, previous_hashes=previous_hashes)

    entries = assign_identifiers(scanned, plan.prior_table)
    manifest = compose_manifest(entries, generated_at=utc_timestamp(now))
    written = write_manifest_atomic(manifest, plan.output)

    stats = manifest.stats
    logger.info(
        "Wrote manifest %s: entries=%d files=%d dirs=%d bytes=%d",
        written,
        stats.total_entries,
        stats.total_files,
        stats.total_dirs,
        stats.total_bytes,
    )
    return BuildResult(
        manifest=manifest,
        output=written,
        scan_roots=plan.scan_roots,
        scanned=scanned,
        prior_table=plan.prior_table,
    )


def build_manifest(
    root: Path,
    output: Path,
    *,
    prior: Path | None = None,
    whitelist: Iterable[str] | None = None,
    scope_filter: ScopeFilter | None = None,
    previous_hashes: dict[str, HashRecord] | None = None,
    lockdown: bool = True,
    console: "Console | None" = None,
    now: datetime | None = None,
    exclude_paths: Iterable[Path] = (),
) -> BuildResult:
    plan = plan_build(
        root,
        output,
        prior=prior,
        whitelist=whitelist,
        scope_filter=scope_filter,
        lockdown=lockdown,
        exclude_paths=exclude_paths,
    )
    return execute_build(plan, previous_hashes=previous_hashes, console=console, now=now)
