from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Callable

from codexica.manifest_io import raw_entries, read_json_document
from codexica.models import Entry, ScannedEntry


CarryForwardTable = dict[tuple[str, str], str]


def new_identifier() -> str:
    return str(uuid.uuid4())


def carry_forward_table(data: Any, *, source: str = "prior manifest") -> CarryForwardTable:
    """Map ``(path, hash or "")`` to the identifier recorded in a prior manifest.

    Items without a path or uuid are ignored, matching how older manifests
    were consumed.
    """
    table: CarryForwardTable = {}
    for item in raw_entries(data, source=source):
        if not isinstance(item, dict):
            continue
        path = item.get("path")
        identifier = item.get("uuid")
        if not isinstance(path, str) or not path or not isinstance(identifier, str) or not identifier:
            continue
        content_hash = item.get("hash")
        key = (path, content_hash if isinstance(content_hash, str) else "")
        table.setdefault(key, identifier)
    return table


def load_carry_forward_table(path: Path) -> CarryForwardTable:
    return carry_forward_table(read_json_document(path, what="Prior manifest"), source=str(path))


def assign_identifiers(
    scanned: list[ScannedEntry],
    table: CarryForwardTable | None = None,
    *,
    mint: Callable[[], str] = new_identifier,
) -> list[Entry]:
    """Reuse identifiers whose path and content hash are unchanged, mint the rest."""
    table = table or {}
    entries: list[Entry] = []
    used: set[str] = set()
    for record in scanned:
        identifier = table.get((record.path, record.content_hash or ""))
        if identifier is None or identifier in used:
            identifier = mint()
            while identifier in used:
                identifier = mint()
        used.add(identifier)
        entries.append(record.with_identifier(identifier))
    return entries
