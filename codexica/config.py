from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from codexica.errors import ConfigError


CONFIG_ENV = "CODEXICA_CONFIG"
DEFAULT_CONFIG_PATH = Path("/etc/codexica/config.json")
DEFAULT_DATA_ROOT = "/srv/data"
DEFAULT_ACL_PATH = "/etc/codexica/acl.json"

ENV_OVERRIDES = {
    "storage_root": "CODEXICA_DATA_ROOT",
    "acl_path": "CODEXICA_ACL_PATH",
    "missing_bucket": "CODEXICA_MISSING_BUCKET",
    "cache_max_age": "CODEXICA_CACHE_MAX_AGE",
}


@dataclass(slots=True)
class GatewayConfig:
    storage_root: str = DEFAULT_DATA_ROOT
    acl_path: str = DEFAULT_ACL_PATH
    missing_bucket: str = "empty"
    # Seconds a parsed manifest may be reused; 0 disables the cache.
    cache_max_age: float = 0.0

    @property
    def storage_root_path(self) -> Path:
        return Path(self.storage_root).expanduser()

    @property
    def acl_file(self) -> Path:
        return Path(self.acl_path).expanduser()

    def validate(self) -> "GatewayConfig":
        if not self.storage_root:
            raise ConfigError("storage_root must not be empty")
        if not self.acl_path:
            raise ConfigError("acl_path must not be empty")
        if self.missing_bucket not in {"empty", "deny"}:
            raise ConfigError(
                f"missing_bucket must be 'empty' or 'deny', got {self.missing_bucket!r}"
            )
        if self.cache_max_age < 0:
            raise ConfigError("cache_max_age must not be negative")
        return self


def config_path() -> Path:
    value = os.getenv(CONFIG_ENV, "").strip()
    return Path(value).expanduser() if value else DEFAULT_CONFIG_PATH


def _coerce_age(value: object, source: str) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"cache_max_age is not a number in {source}: {value!r}") from exc


def load_config(path: Path | None = None) -> GatewayConfig:
    """Build the gateway config from an optional JSON file plus environment overrides."""
    path = path or config_path()
    data: dict[str, object] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as fh:
                loaded = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Config file unreadable: {path}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file is not an object: {path}")
        data.update(loaded)

    for field_name, env_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name, "").strip()
        if value:
            data[field_name] = value

    config = GatewayConfig(
        storage_root=str(data.get("storage_root", DEFAULT_DATA_ROOT)),
        acl_path=str(data.get("acl_path", DEFAULT_ACL_PATH)),
        missing_bucket=str(data.get("missing_bucket", "empty")).strip().lower(),
        cache_max_age=_coerce_age(data.get("cache_max_age", 0.0), str(path)),
    )
    return config.validate()

