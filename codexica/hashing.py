from __future__ import annotations

import hashlib
import mimetypes
import os
from pathlib import Path
from typing import Callable

from codexica.errors import DependencyError


HASH_ALGORITHM = "sha256"
DEFAULT_CHUNK_SIZE = 1024 * 1024
FALLBACK_CONTENT_TYPE = "application/octet-stream"


def sha256_file(
    path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    digest = hashlib.new(HASH_ALGORITHM)
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
    return digest.hexdigest()


def guess_content_type(path: Path | str) -> str:
    content_type, _ = mimetypes.guess_type(str(path), strict=False)
    return content_type or FALLBACK_CONTENT_TYPE


def ensure_capabilities(*, lockdown: bool = True) -> None:
    """Fail fast when hashing or permission changes are not possible."""
    if HASH_ALGORITHM not in hashlib.algorithms_available:
        raise DependencyError(f"Hash algorithm not available: {HASH_ALGORITHM}")
    if lockdown and not hasattr(os, "chmod"):
        raise DependencyError("Permission changes are not supported on this platform")
