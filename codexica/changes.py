from __future__ import annotations

from dataclasses import dataclass

from codexica.identity import CarryForwardTable
from codexica.models import Entry, Manifest


@dataclass(slots=True)
class ChangeReport:
    minted: list[Entry]
    carried: list[Entry]
    revoked: list[tuple[str, str]]
    entry_count: int

    @property
    def has_changes(self) -> bool:
        return bool(self.minted or self.revoked)


def diff_manifests(prior_table: CarryForwardTable, manifest: Manifest) -> ChangeReport:
    """Compare a new manifest against the prior carry-forward table.

    ``revoked`` lists ``(path, identifier)`` pairs whose identifier no longer
    appears, either because the entry is gone or its content changed.
    """
    carried_ids = set(prior_table.values())
    current_ids = {entry.identifier for entry in manifest.entries}

    minted: list[Entry] = []
    carried: list[Entry] = []
    for entry in manifest.entries:
        if entry.identifier in carried_ids:
            carried.append(entry)
        else:
            minted.append(entry)

    revoked = sorted(
        (path, identifier)
        for (path, _content_hash), identifier in prior_table.items()
        if identifier not in current_ids
    )

    return ChangeReport(
        minted=minted,
        carried=carried,
        revoked=revoked,
        entry_count=len(manifest.entries),
    )
