from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from codexica.errors import AuthorizationGap, ConfigError, NotFound, ValidationError
from codexica.hashing import guess_content_type
from codexica.models import ResolvedFile, View


logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def normalize_token(token: str) -> str:
    """Return the stripped token or raise ValidationError for anything malformed."""
    value = (token or "").strip() if isinstance(token, str) else ""
    if not TOKEN_RE.fullmatch(value):
        raise ValidationError("malformed token")
    return value


class PathResolver:
    """Maps a capability token to a verified file under the storage root."""

    def __init__(self, storage_root: Path) -> None:
        self.storage_root = Path(storage_root)

    def canonical_root(self) -> Path:
        try:
            root = Path(os.path.realpath(self.storage_root, strict=True))
        except OSError as exc:
            raise ConfigError(f"Storage root is not accessible: {self.storage_root}") from exc
        if not root.is_dir():
            raise ConfigError(f"Storage root is not a directory: {self.storage_root}")
        return root

    def contained_path(self, relative_path: str) -> Path:
        """Join, canonicalize and check that the result stays under the root."""
        if not relative_path or "\0" in relative_path:
            raise ValidationError("empty or invalid entry path")

        root = self.canonical_root()
        try:
            real = os.path.realpath(os.path.join(root, relative_path), strict=True)
        except OSError as exc:
            raise ValidationError("entry path does not exist") from exc

        prefix = str(root).rstrip(os.sep) + os.sep
        if not real.startswith(prefix):
            raise ValidationError("entry path escapes storage root")
        return Path(real)

    def resolve(self, token: str, view: View) -> ResolvedFile:
        try:
            identifier = normalize_token(token)
            # Lookup is exact-match within what the principal may see.
            entry = view.find(identifier)
            if entry is None:
                raise AuthorizationGap("token not in view")
            if entry.is_directory:
                raise ValidationError("directories are not streamable")

            real = self.contained_path(entry.path)
            if not real.is_file():
                raise ValidationError("entry is not a regular file")
            size = real.stat().st_size
        except NotFound as exc:
            logger.debug("Resolution denied for principal %r: %s", view.principal, exc.reason)
            raise
        except OSError as exc:
            logger.debug("Resolution denied for principal %r: %s", view.principal, exc)
            raise ValidationError("entry is not accessible") from exc

        return ResolvedFile(
            identifier=entry.identifier,
            path=real,
            content_type=entry.content_type or guess_content_type(entry.path),
            size=size,
            filename=Path(entry.path).name,
        )
