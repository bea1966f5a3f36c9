"""
Auction Scraper - vehicle-auction listing collection engine.

This package provides:
- Rotating execution sessions (egress zone + session token)
- Classified retry with exponential backoff and batch circuit breaking
- Adaptive "load more" pagination with duplicate-ratio early stop
- Two-strategy listing extraction with buyer-fee annotation
- Content-addressed raw archive with an append-only ledger
- Sequential scrape orchestration across model/trim targets
"""

__version__ = "1.0.0"
__author__ = "Auction Scraper"
