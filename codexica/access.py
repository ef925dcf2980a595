from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Literal

from codexica.acl import AclDocument, load_acl
from codexica.errors import ConfigError, Unauthorized
from codexica.manifest_io import load_manifest
from codexica.models import Entry, Manifest, ManifestStats, View


logger = logging.getLogger(__name__)

MissingBucketPolicy = Literal["empty", "deny"]
MISSING_BUCKET_POLICIES = ("empty", "deny")

_FileKey = tuple[int, int, int, int]


def _file_key(path: Path) -> _FileKey:
    st = os.stat(path)
    return (st.st_dev, st.st_ino, st.st_size, st.st_mtime_ns)


class ManifestCache:
    """Read-through cache of parsed manifests.

    Entries are keyed on the file's device, inode, size and mtime, so the
    atomic rename done by every rebuild changes the key. ``max_age`` bounds
    how long a parsed document is trusted at all.
    """

    def __init__(self, max_age: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[_FileKey, float, Manifest]] = {}

    def get(self, path: Path) -> Manifest:
        key = _file_key(path)
        now = self._clock()
        cache_key = str(path)
        with self._lock:
            cached = self._items.get(cache_key)
            if cached is not None and cached[0] == key and now - cached[1] <= self._max_age:
                return cached[2]

        manifest = load_manifest(path)
        with self._lock:
            self._items[cache_key] = (key, now, manifest)
        return manifest

    def invalidate(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class AccessControlResolver:
    """Builds the merged entry view for one principal.

    The principal must come from the upstream authentication layer. The ACL
    is re-read for every decision; only parsed manifests may be cached.
    """

    def __init__(
        self,
        acl_path: Path,
        *,
        missing_bucket: MissingBucketPolicy = "empty",
        cache: ManifestCache | None = None,
    ) -> None:
        if missing_bucket not in MISSING_BUCKET_POLICIES:
            raise ConfigError(f"Unknown missing-bucket policy: {missing_bucket!r}")
        self.acl_path = Path(acl_path)
        self.missing_bucket = missing_bucket
        self.cache = cache

    def _manifest_path(self, location: str) -> Path:
        path = Path(location).expanduser()
        if not path.is_absolute():
            path = self.acl_path.parent / path
        return path

    def _load_bucket(self, name: str, location: str) -> Manifest | None:
        path = self._manifest_path(location)
        if not path.is_file():
            if self.missing_bucket == "deny":
                raise ConfigError(f"Manifest for bucket {name!r} is missing: {path}")
            logger.warning("Manifest for bucket %r is missing, treating it as empty: %s", name, path)
            return None
        if self.cache is not None:
            try:
                return self.cache.get(path)
            except FileNotFoundError:
                # Replaced between the existence check and the stat.
                return load_manifest(path)
        return load_manifest(path)

    def granted_buckets(self, acl: AclDocument, principal: str) -> tuple[str, ...]:
        names: list[str] = []
        for name in acl.buckets_for(principal):
            if name not in acl.buckets:
                logger.warning("Principal %r is granted unknown bucket %r, skipping", principal, name)
                continue
            names.append(name)
        return tuple(names)

    def resolve_view(self, principal: str) -> View:
        if not principal:
            raise Unauthorized("No authenticated principal")

        acl = load_acl(self.acl_path)
        buckets = self.granted_buckets(acl, principal)

        seen: set[str] = set()
        merged: list[Entry] = []
        for name in buckets:
            manifest = self._load_bucket(name, acl.buckets[name])
            if manifest is None:
                continue
            for entry in manifest.entries:
                if entry.identifier in seen:
                    continue
                seen.add(entry.identifier)
                merged.append(entry)

        return View(
            principal=principal,
            buckets=buckets,
            entries=tuple(merged),
            stats=ManifestStats.from_entries(merged),
        )
