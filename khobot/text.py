"""
Text normalization helpers shared by the extractor and the catalog.

fold() strips Vietnamese diacritics and lowercases while keeping the string
length unchanged, so a match span found in the folded text can be used to
slice the original text for display.
"""

import unicodedata

# NFD leaves these as standalone letters.
_SPECIAL = {"đ": "d", "Đ": "D"}


def _fold_char(ch: str) -> str:
    if ch in _SPECIAL:
        return _SPECIAL[ch]
    decomposed = unicodedata.normalize("NFD", ch)
    base = "".join(c for c in decomposed if not unicodedata.combining(c))
    # Keep exactly one char per input char.
    return base[:1] if base else " "


def fold(text: str) -> str:
    """Diacritic-free lowercase form used for pattern matching and lookups."""
    if not text:
        return ""
    return "".join(_fold_char(ch).lower()[:1] for ch in text)


def normalize_question(text: str) -> str:
    """NFC-normalize and trim a raw question before any processing."""
    return unicodedata.normalize("NFC", text or "").strip()


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Cut text to at most `limit` chars (before the suffix) on a clean boundary."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + suffix
