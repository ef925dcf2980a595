"""Request-time facade consumed by a transport layer.

The transport supplies the authenticated principal and the single
client-controlled value, the capability token. Every denial surfaces as
``NotFound`` so responses never reveal why access failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from codexica.access import AccessControlResolver, ManifestCache
from codexica.config import GatewayConfig
from codexica.errors import NotFound, Unauthorized
from codexica.models import ResolvedFile
from codexica.resolver import PathResolver, normalize_token


STREAM_CHUNK_SIZE = 64 * 1024
NO_STORE = "private, no-store, max-age=0"


@dataclass(slots=True, frozen=True)
class DownloadTicket:
    file: ResolvedFile
    headers: dict[str, str] = field(default_factory=dict)


def content_disposition(filename: str) -> str:
    escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
    escaped = "".join(ch for ch in escaped if ch >= " " and ch != "\x7f")
    return f'attachment; filename="{escaped}"'


def download_headers(resolved: ResolvedFile) -> dict[str, str]:
    return {
        "Content-Type": resolved.content_type,
        "Content-Length": str(resolved.size),
        "Content-Disposition": content_disposition(resolved.filename),
        "Cache-Control": NO_STORE,
    }


def iter_file(path: Path, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            yield chunk


def status_for(exc: BaseException) -> tuple[int, str]:
    """Uniform (status, message) for a request-time failure."""
    if isinstance(exc, NotFound):
        return 404, "Not found"
    if isinstance(exc, Unauthorized):
        return 401, "Unauthorized"
    return 500, "Server error"


class Gateway:
    def __init__(self, config: GatewayConfig) -> None:
        config.validate()
        self.config = config
        self.cache = ManifestCache(config.cache_max_age) if config.cache_max_age > 0 else None
        self.access = AccessControlResolver(
            config.acl_file,
            missing_bucket=config.missing_bucket,  # type: ignore[arg-type]
            cache=self.cache,
        )
        self.paths = PathResolver(config.storage_root_path)

    def listing(self, principal: str) -> dict[str, Any]:
        view = self.access.resolve_view(principal)
        return {
            "stats": {
                "total_files": view.stats.total_files,
                "total_dirs": view.stats.total_dirs,
                "total_bytes": view.stats.total_bytes,
                "user": view.principal,
                "buckets": list(view.buckets),
            },
            "entries": [entry.to_dict() for entry in view.entries],
        }

    def resolve(self, principal: str, token: str) -> ResolvedFile:
        # Malformed tokens are rejected before the ACL or manifests are read.
        identifier = normalize_token(token)
        view = self.access.resolve_view(principal)
        return self.paths.resolve(identifier, view)

    def download(self, principal: str, token: str) -> DownloadTicket:
        resolved = self.resolve(principal, token)
        return DownloadTicket(file=resolved, headers=download_headers(resolved))

    def reload(self) -> None:
        """Drop every cached manifest so the next request re-reads from disk."""
        if self.cache is not None:
            self.cache.invalidate()
