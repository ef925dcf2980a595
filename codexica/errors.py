from __future__ import annotations


class CodexicaError(Exception):
    """Base class for every error raised by codexica."""


class ConfigError(CodexicaError):
    """ACL or manifest document missing, unreadable or malformed."""


class DependencyError(CodexicaError):
    """A capability the builder needs is unavailable. Raised before any mutation."""


class ManifestBuildError(CodexicaError):
    """Fatal scan condition, such as an empty set of scan roots."""


class Unauthorized(CodexicaError):
    """No principal was supplied by the upstream authentication layer."""


class NotFound(CodexicaError):
    """Uniform request-time denial.

    Subclasses carry the internal reason for diagnostics only; callers must
    treat every subclass the same way.
    """

    def __init__(self, reason: str = "not found") -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(NotFound):
    """Malformed token, directory entry or containment failure."""


class AuthorizationGap(NotFound):
    """Token is not part of the principal's merged view."""
