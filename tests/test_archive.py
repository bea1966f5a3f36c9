"""
Tests for the content archive.
"""

from datetime import datetime, timedelta

import pytest

from auction_scraper.errors import PersistenceError
from auction_scraper.pipeline.archive import (
    ContentArchive,
    FilesystemBlobStore,
    SQLiteArchiveLedger,
    build_storage_path,
    content_hash,
    url_slug,
)


NOW = datetime(2024, 3, 14, 12, 30)
DETAIL_URL = "https://bringatrailer.com/listing/2019-porsche-911-gt3-touring-12/"


@pytest.fixture
def archive(tmp_path):
    """Archive over a temporary bucket and ledger with a fixed clock."""
    return ContentArchive(
        blobs=FilesystemBlobStore(bucket_path=tmp_path / "raw-html", max_file_bytes=1024),
        ledger=SQLiteArchiveLedger(db_path=tmp_path / "ledger.db"),
        retention_days=90,
        clock=lambda: NOW,
    )


class TestStoragePath:
    """Tests for deterministic archive paths."""

    def test_full_layout(self):
        """Test source/date/model/trim-generation/type/slug_hash layout."""
        path = build_storage_path(
            source="bring-a-trailer",
            url=DETAIL_URL,
            artifact_type="detail",
            timestamp=NOW,
            model="718 Cayman",
            trim="GT4 RS",
            generation="982",
        )
        parts = path.split("/")

        assert parts[:5] == ["bring-a-trailer", "20240314", "718-cayman", "gt4-rs-982", "detail"]
        assert parts[5] == f"{url_slug(DETAIL_URL)}_{content_hash(DETAIL_URL)[:12]}.html"
        assert not parts[5].startswith("https")

    def test_unknown_model(self):
        """Test that a missing model becomes "unknown" with no trim segment."""
        path = build_storage_path("cars-and-bids", "https://carsandbids.com/x", "search", NOW, trim="GT3")
        assert path.split("/")[:4] == ["cars-and-bids", "20240314", "unknown", "search"]

    def test_deterministic(self):
        """Test that the same inputs always give the same path."""
        first = build_storage_path("bat", DETAIL_URL, "detail", NOW, model="911")
        second = build_storage_path("bat", DETAIL_URL, "detail", NOW, model="911")
        assert first == second

    def test_distinct_urls_distinct_paths(self):
        """Test that URLs sharing a long prefix still get different paths."""
        prefix = "https://bringatrailer.com/listing/" + "x" * 60
        first = build_storage_path("bat", prefix + "-1/", "detail", NOW)
        second = build_storage_path("bat", prefix + "-2/", "detail", NOW)

        assert url_slug(prefix + "-1/") == url_slug(prefix + "-2/")
        assert first != second


class TestContentArchive:
    """Tests for ContentArchive class."""

    @pytest.mark.asyncio
    async def test_store_writes_blob_and_entry(self, archive, tmp_path):
        """Test that a store writes the blob and a hashed ledger row."""
        html = "<html><h1>2019 Porsche 911 GT3 Touring</h1></html>"
        entry = await archive.store(
            source="bring-a-trailer",
            url=DETAIL_URL,
            content=html,
            artifact_type="detail",
            model="911",
            trim="GT3",
        )

        assert entry.id is not None
        assert entry.content_hash == content_hash(html)
        assert entry.size_bytes == len(html.encode("utf-8"))
        assert entry.expires_at == NOW + timedelta(days=90)
        assert entry.listing_key == DETAIL_URL
        assert (tmp_path / "raw-html" / entry.path).read_text() == html

    @pytest.mark.asyncio
    async def test_every_store_adds_a_row(self, archive):
        """Test that storing the same URL twice keeps both ledger rows."""
        await archive.store("bring-a-trailer", DETAIL_URL, "<html>v1</html>", "detail")
        await archive.store("bring-a-trailer", DETAIL_URL, "<html>v2</html>", "detail")

        stats = await archive.get_stats()
        assert stats["total_files"] == 2
        assert stats["oldest_entry"] == NOW

    @pytest.mark.asyncio
    async def test_retrieve_latest(self, archive):
        """Test that retrieve() returns the most recent content for a listing."""
        await archive.store("bring-a-trailer", DETAIL_URL, "<html>v1</html>", "detail")
        await archive.store("bring-a-trailer", DETAIL_URL, "<html>v2</html>", "detail")

        assert await archive.retrieve(DETAIL_URL) == "<html>v2</html>"
        assert await archive.retrieve("https://bringatrailer.com/listing/other/") is None

    @pytest.mark.asyncio
    async def test_rejects_disallowed_content_type(self, archive):
        """Test that the bucket refuses content types it does not accept."""
        with pytest.raises(PersistenceError):
            await archive.store("bring-a-trailer", DETAIL_URL, "x", "detail", content_type="image/png")

    @pytest.mark.asyncio
    async def test_rejects_oversize_content(self, archive):
        """Test that blobs over the size cap are refused and not recorded."""
        with pytest.raises(PersistenceError):
            await archive.store("bring-a-trailer", DETAIL_URL, "x" * 2048, "detail")

        stats = await archive.get_stats()
        assert stats["total_files"] == 0

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, archive, tmp_path):
        """Test that expired blobs and rows are removed and fresh ones kept."""
        entry = await archive.store("bring-a-trailer", DETAIL_URL, "<html>old</html>", "detail")

        assert await archive.cleanup_expired(now=NOW + timedelta(days=89)) == 0
        assert await archive.cleanup_expired(now=NOW + timedelta(days=91)) == 1

        assert not (tmp_path / "raw-html" / entry.path).exists()
        assert await archive.retrieve(DETAIL_URL) is None

    @pytest.mark.asyncio
    async def test_cleanup_keeps_blob_shared_with_live_entry(self, tmp_path):
        """Test that expiring the morning row keeps the blob the evening row still uses."""
        times = iter([datetime(2024, 3, 14, 0, 10), datetime(2024, 3, 14, 23, 50)])
        archive = ContentArchive(
            blobs=FilesystemBlobStore(bucket_path=tmp_path / "raw-html"),
            ledger=SQLiteArchiveLedger(db_path=tmp_path / "ledger.db"),
            retention_days=90,
            clock=lambda: next(times),
        )
        morning = await archive.store("bring-a-trailer", DETAIL_URL, "<html>v1</html>", "detail")
        evening = await archive.store("bring-a-trailer", DETAIL_URL, "<html>v2</html>", "detail")
        assert morning.path == evening.path

        assert await archive.cleanup_expired(now=datetime(2024, 6, 12, 12, 0)) == 1
        assert await archive.retrieve(DETAIL_URL) == "<html>v2</html>"

        assert await archive.cleanup_expired(now=datetime(2024, 6, 13, 0, 0)) == 1
        assert not (tmp_path / "raw-html" / evening.path).exists()
