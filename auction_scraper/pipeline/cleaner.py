"""
Listing Text Cleaner Module

Normalizes text pulled out of auction pages and parses the handful of
numeric and date formats those pages use (US prices, mileage, model years,
VINs, sale dates).
"""

import html
import re
import unicodedata
from datetime import datetime
from typing import Optional


class ListingTextCleaner:
    """
    Cleans and parses scraped listing text.

    Features:
    - HTML entity decoding and Unicode normalization
    - Emoji and control character removal
    - Whitespace collapsing
    - US price, mileage, year, VIN and sale date parsing

    Example:
        cleaner = ListingTextCleaner()
        cleaner.clean_text("  2019 Porsche  911 GT3 &amp; more ")
        # Returns: "2019 Porsche 911 GT3 & more"
        cleaner.parse_price("Sold for USD $172,500")
        # Returns: 172500.0
    """

    EMOJI_PATTERN = re.compile(
        "["
        "\U0001F600-\U0001F64F"  # Emoticons
        "\U0001F300-\U0001F5FF"  # Symbols & pictographs
        "\U0001F680-\U0001F6FF"  # Transport & map
        "\U0001F1E0-\U0001F1FF"  # Flags
        "\U00002702-\U000027B0"  # Dingbats
        "]+",
        flags=re.UNICODE,
    )

    MULTI_WHITESPACE = re.compile(r'\s+')

    CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]')

    # "$45,000", "USD $45,000", "$45k", "$1.2M". Comma groups are strict so a
    # price run into a model year ("$125,0001985") stops at "$125,000".
    PRICE_PATTERN = re.compile(r'\$\s*((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?)\s*([kKmM](?![a-zA-Z]))?')
    BARE_NUMBER_PATTERN = re.compile(r'([\d,]+(?:\.\d+)?)')

    # "32k Miles", "32,000 miles", "32K-Mile"
    MILEAGE_PATTERN = re.compile(r'([\d,.]+)\s*([kK])?[\s-]*(?:miles?|mi\b)', re.IGNORECASE)

    YEAR_PATTERN = re.compile(r'\b(19[5-9]\d|20[0-4]\d)\b')

    # VINs never contain I, O or Q
    VIN_PATTERN = re.compile(r'\b([A-HJ-NPR-Z0-9]{17})\b')
    CHASSIS_PATTERN = re.compile(r'(?:chassis|vin)\s*[:#]?\s*([A-HJ-NPR-Z0-9]{11,17})', re.IGNORECASE)

    DATE_FORMATS = ("%m/%d/%y", "%m/%d/%Y", "%B %d, %Y", "%b %d, %Y", "%Y-%m-%d")

    def __init__(self, remove_emojis: bool = True, normalize_unicode: bool = True):
        """
        Initialize the cleaner.

        Args:
            remove_emojis: Remove emoji characters
            normalize_unicode: Normalize Unicode (NFKC)
        """
        self._remove_emojis = remove_emojis
        self._normalize_unicode = normalize_unicode

    def clean_text(self, text: str | None) -> str:
        """
        Clean a single text string.

        Args:
            text: Text to clean

        Returns:
            Cleaned text ("" for empty input)
        """
        if not text:
            return ""

        result = html.unescape(text)
        result = self.CONTROL_CHARS.sub('', result)

        if self._normalize_unicode:
            result = unicodedata.normalize("NFKC", result)

        if self._remove_emojis:
            result = self.EMOJI_PATTERN.sub('', result)

        return self.MULTI_WHITESPACE.sub(' ', result).strip()

    def parse_price(self, text: str | None) -> Optional[float]:
        """
        Parse a US dollar amount out of free text.

        Args:
            text: Text such as "Sold for USD $45,000" or "Bid to $1.2M"

        Returns:
            Price as float, or None if no amount is present
        """
        if not text:
            return None

        match = self.PRICE_PATTERN.search(text)
        suffix = None
        if match:
            number, suffix = match.group(1), match.group(2)
        else:
            bare = self.BARE_NUMBER_PATTERN.search(text)
            if not bare:
                return None
            number = bare.group(1)

        try:
            value = float(number.replace(',', ''))
        except ValueError:
            return None

        if suffix:
            value *= 1_000 if suffix.lower() == 'k' else 1_000_000
        return value

    def parse_mileage(self, text: str | None) -> Optional[int]:
        """Parse mileage such as "32k Miles" or "32,000 miles"."""
        if not text:
            return None
        match = self.MILEAGE_PATTERN.search(text)
        if not match:
            return None
        try:
            value = float(match.group(1).replace(',', ''))
        except ValueError:
            return None
        if match.group(2):
            value *= 1_000
        return int(value)

    def parse_year(self, text: str | None) -> Optional[int]:
        """First plausible model year found in the text."""
        if not text:
            return None
        match = self.YEAR_PATTERN.search(text)
        return int(match.group(1)) if match else None

    def parse_vin(self, text: str | None) -> Optional[str]:
        """A 17-character VIN, or an older chassis number when labelled as such."""
        if not text:
            return None
        upper = text.upper()
        match = self.VIN_PATTERN.search(upper)
        if match:
            return match.group(1)
        match = self.CHASSIS_PATTERN.search(upper)
        return match.group(1) if match else None

    def parse_date(self, text: str | None) -> Optional[datetime]:
        """Parse a sale date in any of the formats auction pages use."""
        if not text:
            return None
        candidate = self.clean_text(text)
        parsed = self._strptime(candidate)
        if parsed:
            return parsed

        # Dates are often embedded in a sentence ("Sold on 3/14/24 for ...")
        match = re.search(r'(\d{1,2}/\d{1,2}/\d{2,4})', candidate)
        return self._strptime(match.group(1)) if match else None

    def _strptime(self, text: str) -> Optional[datetime]:
        for fmt in self.DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        return None

