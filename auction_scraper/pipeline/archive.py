"""
Content Archive Module

Stores every raw page a scrape produces so it can be re-parsed later without
re-fetching. Each artifact lands at a deterministic, metadata-derived path in
a blob store and gets an append-only ledger row with its SHA-256 hash, size
and a 90-day expiry.
"""

import hashlib
import json
import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

import aiofiles
import aiosqlite

from auction_scraper.config import config
from auction_scraper.errors import PersistenceError
from auction_scraper.models import ArchiveEntry


logger = logging.getLogger(__name__)

EXTENSIONS = {
    "text/html": "html",
    "application/json": "json",
    "text/plain": "txt",
}


def content_hash(data: str | bytes) -> str:
    """SHA-256 hex digest of text or bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _segment_slug(value: str) -> str:
    return re.sub(r'[^a-z0-9]', '-', value.lower())


def url_slug(url: str) -> str:
    """Filesystem-safe prefix of a URL (scheme dropped, 50 chars max)."""
    stripped = re.sub(r'^https?://', '', url)
    return re.sub(r'[^a-zA-Z0-9-]', '_', stripped)[:50]


def build_storage_path(
    source: str,
    url: str,
    artifact_type: str,
    timestamp: datetime,
    model: str | None = None,
    trim: str | None = None,
    generation: str | None = None,
    extension: str = "html",
) -> str:
    """
    Deterministic archive path for an artifact.

    Layout: source/YYYYMMDD/model/trim[-generation]/type/urlslug_hash.ext,
    with "unknown" in place of the model segment when no model is given.
    The 12-character URL hash suffix keeps distinct URLs apart even when
    every other segment is identical.
    """
    segments = [source, timestamp.strftime("%Y%m%d")]

    if model:
        segments.append(_segment_slug(model))
        if trim:
            trim_slug = _segment_slug(trim)
            if generation:
                trim_slug = f"{trim_slug}-{generation.lower()}"
            segments.append(trim_slug)
    else:
        segments.append("unknown")

    segments.append(artifact_type)
    segments.append(f"{url_slug(url)}_{content_hash(url)[:12]}.{extension}")
    return "/".join(segments)


class BlobStore(Protocol):
    """Bucket-style byte storage."""

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        ...

    async def get(self, path: str) -> Optional[bytes]:
        ...

    async def delete(self, path: str) -> None:
        ...


class ArchiveLedger(Protocol):
    """Metadata ledger for archived artifacts."""

    async def insert(self, entry: ArchiveEntry) -> int:
        ...

    async def latest_for_listing(self, listing_key: str) -> Optional[ArchiveEntry]:
        ...

    async def query_expired(self, now: datetime) -> list[ArchiveEntry]:
        ...

    async def live_paths(self, paths: list[str], now: datetime) -> set[str]:
        ...

    async def delete(self, ids: list[int]) -> int:
        ...

    async def summary(self) -> dict:
        ...


class FilesystemBlobStore:
    """
    Blob store backed by a directory.

    The bucket directory is provisioned on first write and enforces a
    per-file size cap and a set of allowed content types.

    Example:
        blobs = FilesystemBlobStore()
        await blobs.put("bat/20240101/unknown/search/x.html", b"<html>", "text/html")
    """

    def __init__(
        self,
        bucket_path: Path | str | None = None,
        max_file_bytes: int | None = None,
        allowed_content_types: list[str] | None = None,
    ):
        """
        Initialize the blob store.

        Args:
            bucket_path: Bucket directory (default from config)
            max_file_bytes: Per-file size cap (default from config)
            allowed_content_types: Accepted content types (default from config)
        """
        self._bucket_path = Path(bucket_path) if bucket_path else config.archive.bucket_path
        self._max_file_bytes = max_file_bytes or config.archive.max_file_bytes
        self._allowed_content_types = set(allowed_content_types or config.archive.allowed_content_types)
        self._provisioned = False

    def _ensure_bucket(self) -> None:
        if self._provisioned:
            return
        self._bucket_path.mkdir(parents=True, exist_ok=True)
        self._provisioned = True
        logger.debug(f"Blob bucket ready at {self._bucket_path}")

    def _resolve(self, path: str) -> Path:
        resolved = (self._bucket_path / path).resolve()
        if not resolved.is_relative_to(self._bucket_path.resolve()):
            raise PersistenceError(f"Path escapes bucket: {path}")
        return resolved

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        if content_type not in self._allowed_content_types:
            raise PersistenceError(f"Content type not allowed: {content_type}")
        if len(data) > self._max_file_bytes:
            raise PersistenceError(f"Blob exceeds {self._max_file_bytes} bytes: {len(data)}")

        self._ensure_bucket()
        filepath = self._resolve(path)
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(filepath, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise PersistenceError(f"Blob write failed for {path}: {e}") from e

    async def get(self, path: str) -> Optional[bytes]:
        filepath = self._resolve(path)
        if not filepath.exists():
            return None
        async with aiofiles.open(filepath, "rb") as f:
            return await f.read()

    async def delete(self, path: str) -> None:
        filepath = self._resolve(path)
        if filepath.exists():
            filepath.unlink()


class SQLiteArchiveLedger:
    """
    Archive ledger in a local SQLite database.

    Rows are only ever inserted or deleted (on expiry), never updated.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS archive_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            size_bytes INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            source TEXT NOT NULL,
            url TEXT NOT NULL,
            artifact_type TEXT NOT NULL,
            listing_key TEXT,
            metadata TEXT
        )
    """

    COLUMNS = (
        "id, path, content_hash, size_bytes, created_at, expires_at, "
        "source, url, artifact_type, listing_key, metadata"
    )

    def __init__(self, db_path: Path | str | None = None):
        self._db_path = Path(db_path) if db_path else config.archive.ledger_path
        self._initialized = False

    async def _connect(self) -> aiosqlite.Connection:
        if not self._initialized:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self._db_path)
        if not self._initialized:
            await db.execute(self.SCHEMA)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_archive_listing ON archive_entries (listing_key)"
            )
            await db.commit()
            self._initialized = True
        return db

    @staticmethod
    def _row_to_entry(row) -> ArchiveEntry:
        return ArchiveEntry(
            id=row[0],
            path=row[1],
            content_hash=row[2],
            size_bytes=row[3],
            created_at=datetime.fromisoformat(row[4]),
            expires_at=datetime.fromisoformat(row[5]),
            source=row[6],
            url=row[7],
            artifact_type=row[8],
            listing_key=row[9],
            metadata=json.loads(row[10]) if row[10] else {},
        )

    async def insert(self, entry: ArchiveEntry) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO archive_entries (
                    path, content_hash, size_bytes, created_at, expires_at,
                    source, url, artifact_type, listing_key, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.path,
                    entry.content_hash,
                    entry.size_bytes,
                    entry.created_at.isoformat(),
                    entry.expires_at.isoformat(),
                    entry.source,
                    entry.url,
                    entry.artifact_type,
                    entry.listing_key,
                    json.dumps(entry.metadata, default=str),
                ),
            )
            await db.commit()
            return cursor.lastrowid
        finally:
            await db.close()

    async def latest_for_listing(self, listing_key: str) -> Optional[ArchiveEntry]:
        db = await self._connect()
        try:
            async with db.execute(
                f"SELECT {self.COLUMNS} FROM archive_entries WHERE listing_key = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (listing_key,),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_entry(row) if row else None
        finally:
            await db.close()

    async def query_expired(self, now: datetime) -> list[ArchiveEntry]:
        db = await self._connect()
        try:
            async with db.execute(
                f"SELECT {self.COLUMNS} FROM archive_entries WHERE expires_at <= ?",
                (now.isoformat(),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_entry(row) for row in rows]
        finally:
            await db.close()

    async def live_paths(self, paths: list[str], now: datetime) -> set[str]:
        """Subset of paths still referenced by a row that has not expired."""
        if not paths:
            return set()
        db = await self._connect()
        try:
            placeholders = ", ".join("?" for _ in paths)
            async with db.execute(
                f"SELECT DISTINCT path FROM archive_entries WHERE expires_at > ? AND path IN ({placeholders})",
                (now.isoformat(), *paths),
            ) as cursor:
                rows = await cursor.fetchall()
            return {row[0] for row in rows}
        finally:
            await db.close()

    async def delete(self, ids: list[int]) -> int:
        if not ids:
            return 0
        db = await self._connect()
        try:
            placeholders = ", ".join("?" for _ in ids)
            cursor = await db.execute(f"DELETE FROM archive_entries WHERE id IN ({placeholders})", ids)
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def summary(self) -> dict:
        db = await self._connect()
        try:
            async with db.execute(
                "SELECT COUNT(*), COALESCE(SUM(size_bytes), 0), MIN(created_at), MAX(created_at) "
                "FROM archive_entries"
            ) as cursor:
                count, total_bytes, oldest, newest = await cursor.fetchone()
            return {
                "total_files": count,
                "total_bytes": total_bytes,
                "oldest_entry": datetime.fromisoformat(oldest) if oldest else None,
                "newest_entry": datetime.fromisoformat(newest) if newest else None,
            }
        finally:
            await db.close()


class ContentArchive:
    """
    Archive of raw scraped content.

    Features:
    - Deterministic source/date/model/trim/type path per artifact
    - SHA-256 content hash and byte size per entry
    - A new ledger row on every store (historical record, no dedup)
    - Expiry after a retention window, with cleanup of blob and row

    Example:
        archive = ContentArchive()
        entry = await archive.store(
            source="bring-a-trailer",
            url="https://bringatrailer.com/listing/2019-porsche-911-gt3/",
            content=html,
            artifact_type="detail",
            model="911",
            trim="GT3",
        )
        html = await archive.retrieve(entry.listing_key)
    """

    def __init__(
        self,
        blobs: BlobStore | None = None,
        ledger: ArchiveLedger | None = None,
        retention_days: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the archive.

        Args:
            blobs: Blob store (filesystem bucket by default)
            ledger: Metadata ledger (SQLite by default)
            retention_days: Days until an entry expires (default from config)
            clock: Time source
        """
        self._blobs = blobs or FilesystemBlobStore()
        self._ledger = ledger or SQLiteArchiveLedger()
        self._retention = timedelta(days=retention_days or config.archive.retention_days)
        self._clock = clock

    async def store(
        self,
        source: str,
        url: str,
        content: str,
        artifact_type: str,
        model: str | None = None,
        trim: str | None = None,
        generation: str | None = None,
        listing_key: str | None = None,
        metadata: dict | None = None,
        content_type: str = "text/html",
    ) -> ArchiveEntry:
        """
        Archive one artifact.

        Args:
            source: Source name (first path segment)
            url: URL the content was fetched from
            content: Raw content
            artifact_type: "search", "detail" or "listing"
            model: Model name, if known
            trim: Trim name, if known
            generation: Generation code, appended to the trim segment
            listing_key: Key used by retrieve() (defaults to the URL)
            metadata: Extra metadata stored with the ledger row
            content_type: MIME type of the content

        Returns:
            The ledger entry that was written

        Raises:
            PersistenceError: If the blob write or ledger insert fails
        """
        now = self._clock()
        path = build_storage_path(
            source=source,
            url=url,
            artifact_type=artifact_type,
            timestamp=now,
            model=model,
            trim=trim,
            generation=generation,
            extension=EXTENSIONS.get(content_type, "bin"),
        )
        data = content.encode("utf-8")

        await self._blobs.put(path, data, content_type)

        entry = ArchiveEntry(
            path=path,
            content_hash=content_hash(data),
            size_bytes=len(data),
            created_at=now,
            expires_at=now + self._retention,
            source=source,
            url=url,
            artifact_type=artifact_type,
            listing_key=listing_key or url,
            metadata={**(metadata or {}), "model": model, "trim": trim, "generation": generation},
        )
        try:
            entry.id = await self._ledger.insert(entry)
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Ledger insert failed for {path}: {e}") from e

        logger.debug(f"Archived {artifact_type} {url} -> {path} ({entry.size_bytes} bytes)")
        return entry

    async def retrieve(self, listing_key: str) -> Optional[str]:
        """
        Most recently archived content for a listing.

        Args:
            listing_key: Key given at store time (the URL by default)

        Returns:
            Content string, or None if nothing is archived
        """
        entry = await self._ledger.latest_for_listing(listing_key)
        if entry is None:
            return None
        data = await self._blobs.get(entry.path)
        if data is None:
            logger.warning(f"Ledger entry {entry.id} points at missing blob {entry.path}")
            return None
        return data.decode("utf-8")

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """
        Delete expired blobs and their ledger rows.

        Args:
            now: Reference time (default: clock)

        Returns:
            Number of ledger rows removed
        """
        now = now or self._clock()
        expired = await self._ledger.query_expired(now)
        if not expired:
            return 0

        # Several rows can share a path when the same URL is archived twice a day;
        # a blob stays while any unexpired row still points at it
        expired_paths = sorted({entry.path for entry in expired})
        in_use = await self._ledger.live_paths(expired_paths, now)
        for path in expired_paths:
            if path in in_use:
                logger.debug(f"Keeping {path}, still referenced by an unexpired entry")
                continue
            await self._blobs.delete(path)

        deleted = await self._ledger.delete([entry.id for entry in expired if entry.id is not None])
        logger.info(f"Cleaned up {deleted} expired archive entries")
        return deleted

    async def get_stats(self) -> dict:
        """Get archive statistics."""
        summary = await self._ledger.summary()
        return {
            "total_files": summary["total_files"],
            "total_size_mb": round(summary["total_bytes"] / (1024 * 1024), 2),
            "oldest_entry": summary["oldest_entry"],
            "newest_entry": summary["newest_entry"],
        }
