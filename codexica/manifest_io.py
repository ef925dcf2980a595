from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from codexica.errors import ConfigError
from codexica.models import MANIFEST_VERSION, Entry, Manifest, ManifestStats


TEMP_SUFFIX = ".tmp"
READ_ONLY_MODE = 0o444


def temp_prefix(target_name: str) -> str:
    return f".{target_name}."


def utc_timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def read_json_document(path: Path, *, what: str) -> Any:
    """Read a JSON document, mapping every failure onto ConfigError."""
    if not path.is_file():
        raise ConfigError(f"{what} not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except OSError as exc:
        raise ConfigError(f"{what} unreadable: {path}: {exc.strerror or exc}") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"{what} is not valid JSON: {path}") from exc


def raw_entries(data: Any, *, source: str) -> list[Any]:
    # Legacy manifests are a bare list of entries.
    if isinstance(data, dict):
        entries = data.get("entries")
    else:
        entries = data
    if not isinstance(entries, list):
        raise ConfigError(f"Manifest has no entry list: {source}")
    return entries


def parse_manifest(data: Any, *, source: str) -> Manifest:
    entries: list[Entry] = []
    for index, item in enumerate(raw_entries(data, source=source)):
        if not isinstance(item, dict):
            raise ConfigError(f"Manifest entry #{index} is not an object: {source}")
        if not isinstance(item.get("uuid"), str) or not isinstance(item.get("path"), str):
            raise ConfigError(f"Manifest entry #{index} lacks uuid/path: {source}")
        try:
            entries.append(Entry.from_dict(item))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Manifest entry #{index} is malformed: {source}") from exc

    header = data if isinstance(data, dict) else {}
    version = header.get("version", MANIFEST_VERSION)
    if not isinstance(version, int) or version > MANIFEST_VERSION:
        raise ConfigError(f"Unsupported manifest version {version!r}: {source}")
    return Manifest(
        version=version,
        generated_at=str(header.get("generated_at", "")),
        entries=tuple(entries),
        stats=ManifestStats.from_entries(entries),
    )


def load_manifest(path: Path) -> Manifest:
    data = read_json_document(path, what="Manifest")
    return parse_manifest(data, source=str(path))


def serialize_manifest(manifest: Manifest) -> str:
    # Names that are not valid UTF-8 on disk carry lone surrogates; escape them.
    return json.dumps(manifest.to_dict(), indent=2, ensure_ascii=True) + "\n"


def write_manifest_atomic(manifest: Manifest, target: Path) -> Path:
    """Write ``manifest`` next to ``target`` and rename it into place.

    Readers see either the previous document or the complete new one. The
    result is left read-only.
    """
    target = Path(os.path.abspath(target))
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent,
        prefix=temp_prefix(target.name),
        suffix=TEMP_SUFFIX,
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(serialize_manifest(manifest))
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_path, READ_ONLY_MODE)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return target
