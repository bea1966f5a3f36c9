"""Pipeline module - extraction, cleaning, archiving and listing storage."""

from .archive import ContentArchive
from .cleaner import ListingTextCleaner
from .extractor import ListingExtractor
from .listing_store import JSONExporter, SQLiteListingStore

__all__ = [
    "ContentArchive",
    "JSONExporter",
    "ListingExtractor",
    "ListingTextCleaner",
    "SQLiteListingStore",
]
