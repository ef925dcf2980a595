from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    if not pattern:
        return False
    if pattern.endswith("/"):
        # "logs/" prunes the directory named logs and everything beneath it.
        prefix = pattern.rstrip("/")
        return path == prefix or path.startswith(prefix + "/") or PurePosixPath(path).match(f"**/{prefix}")
    path_obj = PurePosixPath(path)
    return path_obj.match(pattern) or path_obj.match(f"**/{pattern}")


@dataclass(slots=True, frozen=True)
class ScopeFilter:
    """Glob filter over root-relative entry paths.

    Include patterns only narrow files; directories are always indexed
    unless an exclude pattern prunes them.
    """

    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    def prunes_directory(self, path: str) -> bool:
        return any(_match_pattern(path, pattern) for pattern in self.exclude_patterns)

    def allows_file(self, path: str) -> bool:
        if self.include_patterns and not any(
            _match_pattern(path, pattern) for pattern in self.include_patterns
        ):
            return False
        return not any(_match_pattern(path, pattern) for pattern in self.exclude_patterns)


def build_scope_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> ScopeFilter:
    include = tuple(_normalize_pattern(pattern) for pattern in (include_patterns or []) if pattern.strip())
    exclude = tuple(_normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern.strip())
    return ScopeFilter(include_patterns=include, exclude_patterns=exclude)
