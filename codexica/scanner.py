from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Callable, Iterable

from codexica.filters import ScopeFilter
from codexica.hashing import guess_content_type, sha256_file
from codexica.manifest_io import TEMP_SUFFIX, temp_prefix
from codexica.models import DIRECTORY_TYPE, HashRecord, ScannedEntry

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

LOCKED_DIR_MODE = 0o555
LOCKED_FILE_MODE = 0o444


@dataclass(slots=True, frozen=True)
class Candidate:
    abs_path: Path
    rel_path: str
    is_dir: bool


def resolve_scan_roots(root: Path, whitelist: Iterable[str] | None = None) -> list[Path]:
    """Return the directories to scan.

    Missing or invalid whitelist names are skipped with a warning; the caller
    decides whether an empty result is fatal.
    """
    if whitelist is None:
        return [root]

    scan_roots: list[Path] = []
    seen: set[str] = set()
    for raw_name in whitelist:
        name = raw_name.strip()
        if not name:
            continue
        if name in seen:
            continue
        seen.add(name)
        if "/" in name or "\\" in name or name in {".", ".."} or "\0" in name:
            logger.warning("Whitelist entry is not a top-level folder name, skipping: %s", name)
            continue
        candidate = root / name
        if candidate.is_symlink() or not candidate.is_dir():
            logger.warning("Whitelisted folder not found or not a directory, skipping: %s", candidate)
            continue
        scan_roots.append(candidate)
    return scan_roots


def relative_exclusions(root: Path, paths: Iterable[Path | None]) -> set[str]:
    """Root-relative forms of the given paths that live under root."""
    excluded: set[str] = set()
    for path in paths:
        if path is None:
            continue
        absolute = Path(os.path.abspath(path))
        parent = Path(os.path.realpath(absolute.parent))
        candidate = parent / absolute.name
        try:
            rel = candidate.relative_to(root)
        except ValueError:
            continue
        if rel.parts:
            excluded.add(rel.as_posix())
    return excluded


def _is_excluded(rel_path: str, excluded: set[str]) -> bool:
    if rel_path in excluded:
        return True
    path = PurePosixPath(rel_path)
    if not path.name.endswith(TEMP_SUFFIX):
        return False
    # Temporary siblings written during atomic emission.
    for target in excluded:
        target_path = PurePosixPath(target)
        if path.parent == target_path.parent and path.name.startswith(temp_prefix(target_path.name)):
            return True
    return False


def _walk(
    directory: Path,
    root: Path,
    excluded: set[str],
    scope_filter: ScopeFilter,
    out: list[Candidate],
) -> None:
    with os.scandir(directory) as it:
        children = sorted(it, key=lambda item: item.name)
    for child in children:
        child_path = Path(child.path)
        rel_path = child_path.relative_to(root).as_posix()
        if _is_excluded(rel_path, excluded):
            continue
        # Symlinks and special files are never indexed or followed.
        if child.is_dir(follow_symlinks=False):
            if scope_filter.prunes_directory(rel_path):
                continue
            out.append(Candidate(child_path, rel_path, True))
            _walk(child_path, root, excluded, scope_filter, out)
        elif child.is_file(follow_symlinks=False):
            if not scope_filter.allows_file(rel_path):
                continue
            out.append(Candidate(child_path, rel_path, False))


def discover_candidates(
    root: Path,
    scan_roots: list[Path],
    *,
    excluded: set[str] | None = None,
    scope_filter: ScopeFilter | None = None,
) -> list[Candidate]:
    excluded = excluded or set()
    scope_filter = scope_filter or ScopeFilter()
    candidates: list[Candidate] = []
    for scan_root in scan_roots:
        if scan_root != root:
            rel_path = scan_root.relative_to(root).as_posix()
            if _is_excluded(rel_path, excluded) or scope_filter.prunes_directory(rel_path):
                continue
            candidates.append(Candidate(scan_root, rel_path, True))
        _walk(scan_root, root, excluded, scope_filter, candidates)

    unique = {candidate.rel_path: candidate for candidate in candidates}
    return [unique[path] for path in sorted(unique)]


def lock_down(candidates: list[Candidate]) -> None:
    """Force directories to read+traverse only and files to read-only."""
    # Children sort after their parent, so walking backwards locks bottom-up.
    for candidate in reversed(candidates):
        if candidate.abs_path.is_symlink():
            continue
        mode = LOCKED_DIR_MODE if candidate.is_dir else LOCKED_FILE_MODE
        os.chmod(candidate.abs_path, mode)


def _record_from_candidate(
    candidate: Candidate,
    previous_hashes: dict[str, HashRecord],
    *,
    on_hash_chunk: Callable[[int], None] | None = None,
) -> ScannedEntry | None:
    try:
        st = candidate.abs_path.lstat()
    except FileNotFoundError:
        logger.warning("Entry vanished during scan, skipping: %s", candidate.rel_path)
        return None

    mode = format(stat.S_IMODE(st.st_mode), "o")
    if candidate.is_dir:
        if not stat.S_ISDIR(st.st_mode):
            return None
        return ScannedEntry(
            path=candidate.rel_path,
            kind="directory",
            size=0,
            content_hash=None,
            content_type=DIRECTORY_TYPE,
            modified_at=int(st.st_mtime),
            mode=mode,
            mtime_ns=st.st_mtime_ns,
            inode=st.st_ino,
        )

    if not stat.S_ISREG(st.st_mode):
        return None
    previous = previous_hashes.get(candidate.rel_path)
    if (
        previous is not None
        and previous.size == st.st_size
        and previous.mtime_ns == st.st_mtime_ns
        and previous.inode == st.st_ino
    ):
        content_hash = previous.sha256
    else:
        content_hash = sha256_file(candidate.abs_path, on_chunk=on_hash_chunk)

    return ScannedEntry(
        path=candidate.rel_path,
        kind="file",
        size=st.st_size,
        content_hash=content_hash,
        content_type=guess_content_type(candidate.rel_path),
        modified_at=int(st.st_mtime),
        mode=mode,
        mtime_ns=st.st_mtime_ns,
        inode=st.st_ino,
    )


def scan_entries(
    candidates: list[Candidate],
    *,
    previous_hashes: dict[str, HashRecord] | None = None,
) -> list[ScannedEntry]:
    previous_hashes = previous_hashes or {}
    records = (_record_from_candidate(candidate, previous_hashes) for candidate in candidates)
    return [record for record in records if record is not None]


def scan_entries_with_progress(
    candidates: list[Candidate],
    *,
    previous_hashes: dict[str, HashRecord] | None = None,
    console: "Console | None" = None,
) -> list[ScannedEntry]:
    from rich.progress import (
        BarColumn,
        DownloadColumn,
        Progress,
        SpinnerColumn,
        TaskProgressColumn,
        TextColumn,
        TimeRemainingColumn,
        TransferSpeedColumn,
    )

    def _shorten_path(path: str, max_len: int = 64) -> str:
        if len(path) <= max_len:
            return path
        keep = max_len - 3
        head = keep // 2
        tail = keep - head
        return f"{path[:head]}...{path[-tail:]}"

    previous_hashes = previous_hashes or {}
    if not candidates:
        return []

    total_bytes = 0
    for candidate in candidates:
        if not candidate.is_dir:
            try:
                total_bytes += candidate.abs_path.lstat().st_size
            except FileNotFoundError:
                continue
    progress_total = total_bytes if total_bytes > 0 else len(candidates)
    processed_bytes = 0
    records: list[ScannedEntry] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]Indexing"),
        BarColumn(),
        TaskProgressColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        TextColumn("{task.fields[entry_progress]}"),
        TextColumn("{task.fields[path]}"),
        console=console,
        transient=False,
        expand=True,
    ) as progress:
        task_id = progress.add_task(
            "index",
            total=progress_total,
            entry_progress=f"0/{len(candidates)} entries",
            path="",
        )

        def _advance_bytes(delta: int) -> None:
            nonlocal processed_bytes
            processed_bytes += delta
            progress.update(task_id, completed=min(processed_bytes, progress_total))

        for index, candidate in enumerate(candidates, start=1):
            progress.update(
                task_id,
                entry_progress=f"{index}/{len(candidates)} entries",
                path=_shorten_path(candidate.rel_path),
            )
            before = processed_bytes
            record = _record_from_candidate(
                candidate,
                previous_hashes,
                on_hash_chunk=_advance_bytes if total_bytes > 0 else None,
            )
            if record is not None:
                records.append(record)
            if total_bytes == 0:
                progress.advance(task_id, 1)
            elif record is not None and record.kind == "file" and processed_bytes == before:
                # Hash reused from the cache, nothing was read.
                _advance_bytes(record.size)

    return records
