from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codexica.errors import ConfigError
from codexica.manifest_io import read_json_document


logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AclDocument:
    buckets: dict[str, str]
    grants: dict[str, tuple[str, ...]] = field(default_factory=dict)
    default_grant: tuple[str, ...] = ()

    def buckets_for(self, principal: str) -> tuple[str, ...]:
        """Bucket names granted to ``principal`` in declared order."""
        if principal in self.grants:
            return self.grants[principal]
        return self.default_grant


def _bucket_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for name in value:
        if not isinstance(name, str) or not name or name in names:
            continue
        names.append(name)
    return tuple(names)


def parse_acl(data: Any, *, source: str = "ACL") -> AclDocument:
    if not isinstance(data, dict) or not data:
        raise ConfigError(f"ACL is empty or not an object: {source}")

    manifests = data.get("manifests")
    if not isinstance(manifests, dict) or not manifests:
        raise ConfigError(f"ACL has no manifest map: {source}")

    buckets: dict[str, str] = {}
    for name, location in manifests.items():
        if not isinstance(location, str) or not location:
            logger.warning("ACL bucket %r has no manifest location, ignoring", name)
            continue
        buckets[str(name)] = location

    users = data.get("users")
    grants: dict[str, tuple[str, ...]] = {}
    if isinstance(users, dict):
        grants = {str(principal): _bucket_list(names) for principal, names in users.items()}

    return AclDocument(
        buckets=buckets,
        grants=grants,
        default_grant=_bucket_list(data.get("default")),
    )


def load_acl(path: Path) -> AclDocument:
    """Read the ACL from disk. Always a fresh read so a rotated ACL applies at once."""
    return parse_acl(read_json_document(path, what="ACL"), source=str(path))
