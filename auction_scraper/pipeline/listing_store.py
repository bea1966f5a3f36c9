"""
Listing Store Module

Persistence for scraped listings (SQLite, keyed by source URL) and a JSON
exporter for run results.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Protocol

import aiofiles
import aiosqlite

from auction_scraper.config import config
from auction_scraper.errors import PersistenceError
from auction_scraper.models import CandidateListing


logger = logging.getLogger(__name__)


class ListingStore(Protocol):
    """Persistence collaborator used by the orchestrator."""

    async def query_existing_urls(self, source: str) -> set[str]:
        ...

    async def upsert(self, source: str, listing: CandidateListing) -> None:
        ...


class SQLiteListingStore:
    """
    Listing table in a local SQLite database.

    Features:
    - One row per (source, source_url)
    - Upsert refreshes every column except the first-seen timestamp
    - Existing URL snapshot per source

    Example:
        store = SQLiteListingStore()
        known = await store.query_existing_urls("bring-a-trailer")
        await store.upsert("bring-a-trailer", listing)
    """

    COLUMNS = {
        "title": "TEXT",
        "price": "REAL",
        "final_price": "REAL",
        "buyer_fee_amount": "REAL",
        "price_before_fee": "REAL",
        "status": "TEXT",
        "model": "TEXT",
        "trim": "TEXT",
        "generation": "TEXT",
        "year": "INTEGER",
        "mileage": "INTEGER",
        "vin": "TEXT",
        "location": "TEXT",
        "sold_date": "TEXT",
        "exterior_color": "TEXT",
        "transmission": "TEXT",
    }

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the store.

        Args:
            db_path: Database file (default from config)
        """
        self._db_path = Path(db_path) if db_path else config.listings_db
        self._initialized = False

    async def _connect(self) -> aiosqlite.Connection:
        if not self._initialized:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self._db_path)
        if not self._initialized:
            columns_sql = ",\n".join(f'"{col}" {sql_type}' for col, sql_type in self.COLUMNS.items())
            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    {columns_sql},
                    first_seen_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (source, source_url)
                )
            """)
            await db.commit()
            self._initialized = True
        return db

    async def query_existing_urls(self, source: str) -> set[str]:
        """
        URLs already persisted for a source.

        Raises:
            PersistenceError: If the database cannot be read
        """
        try:
            db = await self._connect()
            try:
                async with db.execute(
                    "SELECT source_url FROM listings WHERE source = ?", (source,)
                ) as cursor:
                    rows = await cursor.fetchall()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Could not read existing listings: {e}") from e
        return {row[0] for row in rows}

    async def upsert(self, source: str, listing: CandidateListing) -> None:
        """
        Insert or refresh a listing.

        Raises:
            PersistenceError: If the write fails
        """
        data = listing.to_dict()
        columns = list(self.COLUMNS)
        values = [data.get(col) for col in columns]

        columns_str = ", ".join(f'"{col}"' for col in columns)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f'"{col}" = excluded."{col}"' for col in columns)

        try:
            db = await self._connect()
            try:
                await db.execute(
                    f"""
                    INSERT INTO listings (source, source_url, {columns_str})
                    VALUES (?, ?, {placeholders})
                    ON CONFLICT (source, source_url) DO UPDATE SET
                        {updates},
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    [source, listing.url, *values],
                )
                await db.commit()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Upsert failed for {listing.url}: {e}") from e


class JSONExporter:
    """
    Export run results to JSON.

    Example:
        exporter = JSONExporter()
        filepath = await exporter.export([l.to_dict() for l in listings])
    """

    def __init__(
        self,
        export_dir: Path | str | None = None,
        pretty: bool = True,
        jsonl: bool = False,
    ):
        """
        Initialize JSON exporter.

        Args:
            export_dir: Output directory (default: <archive base>/exports)
            pretty: Pretty-print JSON (ignored if jsonl=True)
            jsonl: Export as JSON Lines (one object per line)
        """
        self._export_dir = Path(export_dir) if export_dir else config.archive.base_path / "exports"
        self._pretty = pretty
        self._jsonl = jsonl

    def _generate_filename(self, extension: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"listings_{timestamp}.{extension}"

    async def export(
        self,
        data: List[Dict[str, Any]],
        filename: str | Path | None = None,
    ) -> str:
        """
        Write records to a JSON file.

        Args:
            data: Records to export
            filename: Target file; relative names land in the export directory

        Returns:
            Path to the exported file
        """
        ext = "jsonl" if self._jsonl else "json"
        filepath = Path(filename) if filename else Path(self._generate_filename(ext))
        if not filepath.is_absolute() and filepath.parent == Path("."):
            filepath = self._export_dir / filepath
        filepath.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(filepath, "w", encoding="utf-8") as f:
            if self._jsonl:
                for item in data:
                    await f.write(json.dumps(item, ensure_ascii=False, default=str) + "\n")
            else:
                await f.write(json.dumps(
                    data,
                    indent=2 if self._pretty else None,
                    ensure_ascii=False,
                    default=str,
                ))

        logger.info(f"Exported {len(data)} listings to {filepath}")
        return str(filepath)
