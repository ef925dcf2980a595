from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal


MANIFEST_VERSION = 1
DIRECTORY_TYPE = "directory"

EntryKind = Literal["file", "directory"]


@dataclass(slots=True, frozen=True)
class Entry:
    identifier: str
    path: str
    kind: EntryKind
    size: int
    content_hash: str | None
    content_type: str
    modified_at: int
    mode: str

    @property
    def is_directory(self) -> bool:
        return self.kind == "directory"

    @property
    def carry_key(self) -> tuple[str, str]:
        return (self.path, self.content_hash or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.identifier,
            "path": self.path,
            "type": DIRECTORY_TYPE if self.is_directory else self.content_type,
            "size": self.size,
            "hash": self.content_hash,
            "mtime": self.modified_at,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entry":
        raw_type = str(data.get("type") or "")
        kind: EntryKind = "directory" if raw_type == DIRECTORY_TYPE else "file"
        content_hash = data.get("hash")
        size = data.get("size") or 0
        return cls(
            identifier=str(data["uuid"]),
            path=str(data["path"]),
            kind=kind,
            size=int(size) if isinstance(size, (int, float)) else 0,
            content_hash=None if content_hash is None or kind == "directory" else str(content_hash),
            content_type=DIRECTORY_TYPE if kind == "directory" else raw_type,
            modified_at=int(data.get("mtime") or 0),
            mode=str(data.get("mode") or ""),
        )


@dataclass(slots=True, frozen=True)
class ScannedEntry:
    """Metadata collected for one filesystem entry, before identity assignment."""

    path: str
    kind: EntryKind
    size: int
    content_hash: str | None
    content_type: str
    modified_at: int
    mode: str
    mtime_ns: int = 0
    inode: int = 0

    def with_identifier(self, identifier: str) -> Entry:
        return Entry(
            identifier=identifier,
            path=self.path,
            kind=self.kind,
            size=self.size,
            content_hash=self.content_hash,
            content_type=self.content_type,
            modified_at=self.modified_at,
            mode=self.mode,
        )


@dataclass(slots=True, frozen=True)
class HashRecord:
    path: str
    sha256: str
    size: int
    mtime_ns: int
    inode: int


@dataclass(slots=True, frozen=True)
class ManifestStats:
    total_entries: int = 0
    total_files: int = 0
    total_dirs: int = 0
    total_bytes: int = 0

    @classmethod
    def from_entries(cls, entries: list[Entry] | tuple[Entry, ...]) -> "ManifestStats":
        files = [entry for entry in entries if not entry.is_directory]
        return cls(
            total_entries=len(entries),
            total_files=len(files),
            total_dirs=len(entries) - len(files),
            total_bytes=sum(entry.size for entry in files),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total_entries": self.total_entries,
            "total_files": self.total_files,
            "total_dirs": self.total_dirs,
            "total_bytes": self.total_bytes,
        }


@dataclass(slots=True, frozen=True)
class Manifest:
    generated_at: str
    entries: tuple[Entry, ...]
    stats: ManifestStats
    version: int = MANIFEST_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generated_at": self.generated_at,
            "stats": self.stats.to_dict(),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def identifiers(self) -> list[str]:
        return [entry.identifier for entry in self.entries]


@dataclass(slots=True, frozen=True)
class View:
    """Merged, de-duplicated entries visible to one principal."""

    principal: str
    buckets: tuple[str, ...]
    entries: tuple[Entry, ...]
    stats: ManifestStats

    def find(self, identifier: str) -> Entry | None:
        for entry in self.entries:
            if entry.identifier == identifier:
                return entry
        return None


@dataclass(slots=True, frozen=True)
class ResolvedFile:
    identifier: str
    path: Path
    content_type: str
    size: int
    filename: str = field(default="")
