from __future__ import annotations

from pathlib import Path

import aiosqlite

from codexica.models import HashRecord, ScannedEntry


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS file_hash (
    path TEXT PRIMARY KEY,
    sha256 TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    inode INTEGER NOT NULL
);
"""

META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cache_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

ROOT_META_KEY = "storage_root"
SIDECAR_SUFFIXES = ("-journal", "-wal", "-shm")


def cache_files(db_path: Path) -> list[Path]:
    """The database file plus the journal files SQLite may create beside it."""
    return [db_path, *(db_path.with_name(db_path.name + suffix) for suffix in SIDECAR_SUFFIXES)]


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SCHEMA_SQL)
        await db.execute(META_SCHEMA_SQL)
        await db.commit()


async def load_hashes(db_path: Path, root: Path) -> dict[str, HashRecord]:
    """Cached hashes for ``root``; a cache written for another root is ignored."""
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT value FROM cache_meta WHERE key = ?", (ROOT_META_KEY,))
        meta = await cursor.fetchone()
        await cursor.close()
        if meta is None or str(meta["value"]) != str(root):
            return {}

        cursor = await db.execute(
            "SELECT path, sha256, size, mtime_ns, inode FROM file_hash ORDER BY path"
        )
        rows = await cursor.fetchall()
        await cursor.close()

    return {
        str(row["path"]): HashRecord(
            path=str(row["path"]),
            sha256=str(row["sha256"]),
            size=int(row["size"]),
            mtime_ns=int(row["mtime_ns"]),
            inode=int(row["inode"]),
        )
        for row in rows
    }


async def replace_hashes(db_path: Path, root: Path, scanned: list[ScannedEntry]) -> int:
    records = [
        (entry.path, entry.content_hash, entry.size, entry.mtime_ns, entry.inode)
        for entry in scanned
        if entry.kind == "file" and entry.content_hash is not None
    ]
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM file_hash")
        if records:
            await db.executemany(
                """
                INSERT INTO file_hash (path, sha256, size, mtime_ns, inode)
                VALUES (?, ?, ?, ?, ?)
                """,
                records,
            )
        await db.execute(
            "INSERT OR REPLACE INTO cache_meta (key, value) VALUES (?, ?)",
            (ROOT_META_KEY, str(root)),
        )
        await db.commit()
    return len(records)
