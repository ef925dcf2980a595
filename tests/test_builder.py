"""Manifest builder behavior.

Covers scope resolution, identity carry-forward across rebuilds, ordering,
symlink handling, permission lockdown and fail-fast failure modes.
"""

from __future__ import annotations

import json
import os
import stat
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock

from codexica.builder import build_manifest, compose_manifest, parse_whitelist
from codexica.errors import ConfigError, DependencyError, ManifestBuildError
from codexica.filters import build_scope_filter
from codexica.hash_cache import cache_files
from codexica.manifest_io import load_manifest
from codexica.models import View
from codexica.resolver import PathResolver


def _write_tree(root: Path, files: dict[str, str]) -> None:
    for rel_path, text in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def _unlock(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        os.chmod(dirpath, 0o755)
        for name in filenames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                os.chmod(path, 0o644)


class BuilderTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name).resolve()
        self.root = self.base / "data"
        self.root.mkdir()
        self.out = self.base / "out"
        self.out.mkdir()

    def tearDown(self) -> None:
        _unlock(self.base)
        self._tmp.cleanup()

    def file_entries(self, manifest):
        return [entry for entry in manifest.entries if entry.kind == "file"]


class ScenarioTests(BuilderTestCase):
    def test_whitelist_rebuild_rotates_identifier_only_on_content_change(self) -> None:
        _write_tree(self.root, {"public/a.txt": "hi", "team/b.txt": "team"})

        first = build_manifest(self.root, self.out / "m1.json", whitelist=["public"]).manifest
        files = self.file_entries(first)
        self.assertEqual([entry.path for entry in files], ["public/a.txt"])
        u1 = files[0].identifier

        target = self.root / "public" / "a.txt"
        os.chmod(target, 0o644)
        target.write_text("hello", encoding="utf-8")

        second = build_manifest(
            self.root, self.out / "m2.json", whitelist=["public"], prior=self.out / "m1.json"
        ).manifest
        u2 = self.file_entries(second)[0].identifier
        self.assertNotEqual(u1, u2)
        self.assertNotIn(u1, second.identifiers())

        third = build_manifest(
            self.root, self.out / "m3.json", whitelist=["public"], prior=self.out / "m2.json"
        ).manifest
        self.assertEqual(self.file_entries(third)[0].identifier, u2)

    def test_directory_identity_survives_content_change_below_it(self) -> None:
        _write_tree(self.root, {"public/a.txt": "hi"})
        first = build_manifest(self.root, self.out / "m1.json").manifest

        target = self.root / "public" / "a.txt"
        os.chmod(target, 0o644)
        target.write_text("changed", encoding="utf-8")
        second = build_manifest(self.root, self.out / "m2.json", prior=self.out / "m1.json").manifest

        self.assertEqual(first.entries[0].path, "public")
        self.assertEqual(first.entries[0].identifier, second.entries[0].identifier)


class IdentityTests(BuilderTestCase):
    def test_rebuild_of_unchanged_tree_keeps_every_identifier(self) -> None:
        _write_tree(self.root, {"a.txt": "a", "docs/b.md": "b", "docs/deep/c.bin": "c"})
        first = build_manifest(self.root, self.out / "m1.json").manifest
        second = build_manifest(self.root, self.out / "m2.json", prior=self.out / "m1.json").manifest

        self.assertEqual(first.identifiers(), second.identifiers())
        self.assertEqual([e.path for e in first.entries], [e.path for e in second.entries])

    def test_rename_mints_a_new_identifier(self) -> None:
        _write_tree(self.root, {"old.txt": "same"})
        first = build_manifest(self.root, self.out / "m1.json", lockdown=False).manifest
        (self.root / "old.txt").rename(self.root / "new.txt")
        second = build_manifest(
            self.root, self.out / "m2.json", prior=self.out / "m1.json", lockdown=False
        ).manifest

        self.assertEqual(len(second.entries), 1)
        self.assertEqual(second.entries[0].path, "new.txt")
        self.assertNotEqual(first.entries[0].identifier, second.entries[0].identifier)

    def test_legacy_bare_list_prior_is_accepted(self) -> None:
        _write_tree(self.root, {"a.txt": "a"})
        first = build_manifest(self.root, self.out / "m1.json", lockdown=False).manifest
        legacy = self.out / "legacy.json"
        legacy.write_text(json.dumps([e.to_dict() for e in first.entries]), encoding="utf-8")

        second = build_manifest(self.root, self.out / "m2.json", prior=legacy, lockdown=False).manifest
        self.assertEqual(first.identifiers(), second.identifiers())

    def test_missing_prior_manifest_is_fatal_before_mutation(self) -> None:
        _write_tree(self.root, {"a.txt": "a"})
        os.chmod(self.root / "a.txt", 0o644)

        with self.assertRaises(ConfigError):
            build_manifest(self.root, self.out / "m.json", prior=self.out / "missing.json")

        self.assertEqual(stat.S_IMODE((self.root / "a.txt").stat().st_mode), 0o644)
        self.assertFalse((self.out / "m.json").exists())


class OrderingTests(BuilderTestCase):
    def test_entries_sorted_by_path_and_identifiers_unique(self) -> None:
        _write_tree(self.root, {"b.txt": "1", "a/c.txt": "2", "a.txt": "3", "B.txt": "4"})
        manifest = build_manifest(self.root, self.out / "m.json", lockdown=False).manifest

        paths = [entry.path for entry in manifest.entries]
        self.assertEqual(paths, ["B.txt", "a", "a.txt", "a/c.txt", "b.txt"])
        self.assertEqual(len(set(manifest.identifiers())), len(paths))

    def test_written_document_preserves_order_and_stats(self) -> None:
        _write_tree(self.root, {"z.txt": "zz", "m/n.txt": "nnn"})
        build_manifest(self.root, self.out / "m.json", lockdown=False)

        data = json.loads((self.out / "m.json").read_text(encoding="utf-8"))
        self.assertEqual(data["version"], 1)
        self.assertEqual([e["path"] for e in data["entries"]], ["m", "m/n.txt", "z.txt"])
        self.assertEqual(
            data["stats"],
            {"total_entries": 3, "total_files": 2, "total_dirs": 1, "total_bytes": 5},
        )
        self.assertRegex(data["generated_at"], r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_compose_rejects_duplicate_identifiers(self) -> None:
        _write_tree(self.root, {"a.txt": "a", "b.txt": "b"})
        manifest = build_manifest(self.root, self.out / "m.json", lockdown=False).manifest
        first, second = manifest.entries
        clash = replace(second, identifier=first.identifier)
        with self.assertRaises(ManifestBuildError):
            compose_manifest([first, clash], generated_at="2026-01-01T00:00:00Z")


class MetadataTests(BuilderTestCase):
    def test_file_and_directory_metadata(self) -> None:
        _write_tree(self.root, {"docs/readme.txt": "hello"})
        manifest = build_manifest(self.root, self.out / "m.json").manifest
        directory, readme = manifest.entries

        self.assertEqual(directory.kind, "directory")
        self.assertEqual(directory.size, 0)
        self.assertIsNone(directory.content_hash)
        self.assertEqual(directory.to_dict()["type"], "directory")
        self.assertEqual(directory.mode, "555")

        self.assertEqual(readme.kind, "file")
        self.assertEqual(readme.size, 5)
        self.assertEqual(
            readme.content_hash,
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824",
        )
        self.assertEqual(readme.content_type, "text/plain")
        self.assertEqual(readme.mode, "444")

    def test_lockdown_sets_modes_on_disk(self) -> None:
        _write_tree(self.root, {"d/e/f.sh": "#!/bin/sh\n"})
        os.chmod(self.root / "d" / "e" / "f.sh", 0o775)
        build_manifest(self.root, self.out / "m.json")

        self.assertEqual(stat.S_IMODE((self.root / "d").stat().st_mode), 0o555)
        self.assertEqual(stat.S_IMODE((self.root / "d" / "e").stat().st_mode), 0o555)
        self.assertEqual(stat.S_IMODE((self.root / "d" / "e" / "f.sh").stat().st_mode), 0o444)
        self.assertEqual(stat.S_IMODE((self.out / "m.json").stat().st_mode), 0o444)

    def test_no_lockdown_leaves_modes_alone(self) -> None:
        _write_tree(self.root, {"a.txt": "a"})
        os.chmod(self.root / "a.txt", 0o640)
        manifest = build_manifest(self.root, self.out / "m.json", lockdown=False).manifest

        self.assertEqual(stat.S_IMODE((self.root / "a.txt").stat().st_mode), 0o640)
        self.assertEqual(manifest.entries[0].mode, "640")


@unittest.skipUnless(hasattr(os, "symlink"), "symlinks not supported")
class SymlinkTests(BuilderTestCase):
    def test_symlinks_are_neither_indexed_nor_followed(self) -> None:
        outside = self.base / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("secret", encoding="utf-8")
        os.chmod(outside / "secret.txt", 0o600)
        _write_tree(self.root, {"real.txt": "real"})
        os.symlink(outside / "secret.txt", self.root / "link.txt")
        os.symlink(outside, self.root / "linkdir")

        manifest = build_manifest(self.root, self.out / "m.json").manifest

        self.assertEqual([entry.path for entry in manifest.entries], ["real.txt"])
        self.assertEqual(stat.S_IMODE((outside / "secret.txt").stat().st_mode), 0o600)

    def test_symlinked_whitelist_folder_is_skipped(self) -> None:
        outside = self.base / "outside"
        outside.mkdir()
        _write_tree(self.root, {"public/a.txt": "a"})
        os.symlink(outside, self.root / "linked")

        with self.assertLogs("codexica.scanner", level="WARNING"):
            manifest = build_manifest(
                self.root, self.out / "m.json", whitelist=["public", "linked"], lockdown=False
            ).manifest
        self.assertEqual([e.path for e in manifest.entries], ["public", "public/a.txt"])


class ScopeTests(BuilderTestCase):
    def test_missing_whitelist_entry_is_skipped_with_warning(self) -> None:
        _write_tree(self.root, {"public/a.txt": "a", "team/b.txt": "b"})

        with self.assertLogs("codexica.scanner", level="WARNING") as logs:
            result = build_manifest(
                self.root, self.out / "m.json", whitelist=["public", "ghost"], lockdown=False
            )

        self.assertTrue(any("ghost" in line for line in logs.output))
        self.assertEqual([e.path for e in result.manifest.entries], ["public", "public/a.txt"])
        self.assertEqual(result.scan_roots, [self.root / "public"])

    def test_no_remaining_scan_root_is_fatal(self) -> None:
        _write_tree(self.root, {"public/a.txt": "a"})
        with self.assertLogs("codexica.scanner", level="WARNING"):
            with self.assertRaises(ManifestBuildError):
                build_manifest(self.root, self.out / "m.json", whitelist=["ghost", "../data"])
        self.assertFalse((self.out / "m.json").exists())

    def test_root_that_is_not_a_directory_is_fatal(self) -> None:
        with self.assertRaises(ManifestBuildError):
            build_manifest(self.root / "missing", self.out / "m.json")

    def test_parse_whitelist(self) -> None:
        self.assertIsNone(parse_whitelist(None))
        self.assertIsNone(parse_whitelist("  "))
        self.assertEqual(parse_whitelist(" A, B ,,C "), ["A", "B", "C"])
        self.assertEqual(parse_whitelist(","), [])

    def test_manifest_inside_root_is_excluded(self) -> None:
        _write_tree(self.root, {"a.txt": "a"})
        target = self.root / "manifest.json"

        first = build_manifest(self.root, target).manifest
        second = build_manifest(self.root, target, prior=target).manifest

        self.assertEqual([e.path for e in second.entries], ["a.txt"])
        self.assertEqual(first.identifiers(), second.identifiers())
        self.assertEqual(load_manifest(target).identifiers(), second.identifiers())

    def test_scope_filter_prunes_directories_and_files(self) -> None:
        _write_tree(
            self.root,
            {"keep/a.txt": "a", "keep/b.log": "b", "cache/c.txt": "c", "d.txt": "d"},
        )
        scope_filter = build_scope_filter(exclude_patterns=["cache/", "*.log"])
        manifest = build_manifest(
            self.root, self.out / "m.json", scope_filter=scope_filter, lockdown=False
        ).manifest

        self.assertEqual([e.path for e in manifest.entries], ["d.txt", "keep", "keep/a.txt"])

    def test_extra_exclusions_and_their_sidecars_are_skipped(self) -> None:
        _write_tree(self.root, {"a.txt": "a", "cache.db": "db", "cache.db-wal": "wal"})
        manifest = build_manifest(
            self.root,
            self.out / "m.json",
            lockdown=False,
            exclude_paths=cache_files(self.root / "cache.db"),
        ).manifest

        self.assertEqual([e.path for e in manifest.entries], ["a.txt"])

    def test_lockdown_leaves_the_root_itself_writable(self) -> None:
        _write_tree(self.root, {"d/a.txt": "a"})
        os.chmod(self.root, 0o755)
        build_manifest(self.root, self.root / "manifest.json")

        self.assertEqual(stat.S_IMODE(self.root.stat().st_mode), 0o755)
        self.assertEqual(stat.S_IMODE((self.root / "d").stat().st_mode), 0o555)


class DependencyTests(BuilderTestCase):
    def test_missing_hash_capability_aborts_before_any_mutation(self) -> None:
        _write_tree(self.root, {"a.txt": "a"})
        os.chmod(self.root / "a.txt", 0o644)

        with mock.patch("hashlib.algorithms_available", frozenset()):
            with self.assertRaises(DependencyError):
                build_manifest(self.root, self.out / "m.json")

        self.assertEqual(stat.S_IMODE((self.root / "a.txt").stat().st_mode), 0o644)
        self.assertFalse((self.out / "m.json").exists())


class EncodingTests(BuilderTestCase):
    def test_name_that_is_not_utf8_is_written_and_resolvable(self) -> None:
        (self.root / "docs").mkdir()
        raw_path = os.path.join(os.fsencode(self.root / "docs"), b"caf\xe9.txt")
        try:
            with open(raw_path, "wb") as fh:
                fh.write(b"menu")
        except OSError:
            self.skipTest("filesystem rejects names that are not UTF-8")
        rel_path = "docs/" + os.fsdecode(b"caf\xe9.txt")

        result = build_manifest(self.root, self.out / "m.json")

        self.assertIn("\\udce9", (self.out / "m.json").read_text(encoding="utf-8"))
        loaded = load_manifest(self.out / "m.json")
        self.assertEqual(loaded, result.manifest)
        entry = next(e for e in loaded.entries if e.path == rel_path)

        view = View(principal="p", buckets=("b",), entries=loaded.entries, stats=loaded.stats)
        resolved = PathResolver(self.root).resolve(entry.identifier, view)
        self.assertEqual(os.fsencode(resolved.path), raw_path)
        self.assertEqual(resolved.size, 4)


if __name__ == "__main__":
    unittest.main()
