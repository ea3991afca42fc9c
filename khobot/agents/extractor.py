"""
Entity extractor: pull the thing a question is about out of free text.

Everything here is table-driven. Each table is an ordered list of patterns
matched against the folded question (diacritics stripped, lowercase); the
first hit wins. Because folding keeps one char per input char, match spans
are used to slice the original text, so names keep their accents for display.

Questions are informal Vietnamese, often typed without accents:
  "Ma hang ABC123 ton kho bao nhieu?"      -> code ABC123, metric rest
  "Mặt hàng Thạch kem còn mấy thùng"       -> name "Thạch kem", metric boxes
  "Lich su xuat kho ABC123 tu 1/11/2025"   -> movement, status delivered
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from khobot.text import fold

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityLookup:
    """What the question refers to: an item code or a free-text name."""
    kind: str   # "code" | "name"
    value: str


@dataclass(frozen=True)
class CodePattern:
    marker: str
    regex: re.Pattern
    explicit: bool   # marker is an explicit "mã ..." so any token counts


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

_CODE_TOKEN = r"\b\s*[:\-]?\s*([a-z0-9_-]+)"

CODE_PATTERNS: list[CodePattern] = [
    CodePattern("mã mặt hàng", _rx(r"\bma\s*mat\s*hang" + _CODE_TOKEN), True),
    CodePattern("mã hàng", _rx(r"\bma\s*hang" + _CODE_TOKEN), True),
    CodePattern("mã", _rx(r"\bma" + _CODE_TOKEN), True),
    CodePattern("mặt hàng", _rx(r"\bmat\s*hang" + _CODE_TOKEN), False),
    CodePattern("item", _rx(r"\bitem" + _CODE_TOKEN), False),
    CodePattern("hàng", _rx(r"\bhang" + _CODE_TOKEN), False),
]

# Words that follow "mã" in a sentence without being a code.
NOT_A_CODE = frozenset({
    "cua", "la", "nao", "gi", "hang", "mat", "so", "nay", "do", "sku",
    "san", "item", "the", "va", "voi", "cho",
})

BARE_CODE_PATTERN = _rx(r"^([a-z0-9_-]{4,})\b")

_NAME_TAIL = r"\b\s*[:\-]?\s*([^\n\r?!.]+)"

NAME_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("mặt hàng", _rx(r"\bmat\s*hang" + _NAME_TAIL)),
    ("item", _rx(r"\bitem" + _NAME_TAIL)),
    ("tồn kho của", _rx(r"\bton\s*kho\s*(?:cua\s*)?" + _NAME_TAIL)),
    ("hàng", _rx(r"\bhang" + _NAME_TAIL)),
]

# Trailing question clauses cut from a captured name (folded, space-padded).
NAME_STOP_PHRASES = [
    " con bao nhieu ", " bao nhieu ", " con lai ", " con ", " ton kho ", " ton ",
    " da ", " trong ", " duoc ", " xuat ", " nhap ", " tra ", " den ", " tu ngay ",
    " co ", " la ", " hien tai ", " hien ", " may ", " so luong ", " so thung ",
    " thung ", " hop ", " vao ", " ngay ", " the nao ", " nao ", " gi ",
]

_PRODUCT_TAIL = r"\b\s*[:\-]?\s*([a-z0-9 _-]+)"

PRODUCT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("mã sku", _rx(r"\bma\s*sku" + _PRODUCT_TAIL)),
    ("sku", _rx(r"\bsku" + _PRODUCT_TAIL)),
    ("sản phẩm", _rx(r"\bsan\s*pham" + _PRODUCT_TAIL)),
    ("product", _rx(r"\bproduct" + _PRODUCT_TAIL)),
]

PRODUCT_STOP_PHRASES = [" bao gom ", " gom ", " co ", " la ", " can ", " duoc ", " nhung ", " thanh phan "]

# Inventory metric requested by the question. Order matters:
# "số lượng mỗi thùng" must win over plain "thùng".
METRIC_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("quantity_per_box", _rx(
        r"so\s*luong\s*(?:moi|/|tren|1|mot)\s*(?:thung|hop)"
        r"|quantity\s*(?:per|/)\s*box|\bper\s*box\b|\bsl\s*/\s*thung|\bquy\s*cach\b"
    )),
    ("boxes", _rx(r"\b(?:so\s*thung|so\s*hop|thung|hop|so\s*du|du\s*le|boxes)\b")),
    ("received", _rx(r"\b(?:nhap\s*kho|da\s*nhap|nhap|received)\b")),
    ("delivered", _rx(r"\b(?:xuat\s*kho|da\s*xuat|xuat|delivered)\b")),
    ("rest", _rx(r"\b(?:ton\s*kho|ton|con\s*lai|con|rest|stock)\b")),
]

MOVEMENT_STATUS_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("returned", _rx(r"\b(?:tra\s*hang|hoan\s*hang|hoan|returned)\b")),
    ("received", _rx(r"\b(?:nhap\s*kho|nhap|received)\b")),
    ("delivered", _rx(r"\b(?:xuat\s*kho|xuat|delivered)\b")),
]

MOVEMENT_COUNT_PATTERN = _rx(
    r"\b(?:bao\s*nhieu\s*lan|may\s*lan|so\s*lan|bao\s*nhieu\s*(?:log|nhat\s*ky|phieu))\b"
)

LOG_VOCABULARY = _rx(r"\b(?:nhat\s*ky|lich\s*su|history|logs?)\b")
MOVEMENT_VOCABULARY = _rx(
    r"\b(?:nhap\s*kho|xuat\s*kho|tra\s*hang|hoan\s*hang|nhap|xuat|received|delivered|returned)\b"
)
DATE_TOKEN = _rx(r"(?<![\d/])(\d{1,2})/(\d{1,2})(?:/(\d{4}))?(?![\d/])")
DAY_ONLY_TOKEN = _rx(r"\bngay\s*(\d{1,2})\b(?!\s*/)")
RANGE_PHRASES = _rx(r"\b(?:tu\s*ngay|den\s*ngay|khoang\s*thoi\s*gian|trong\s*khoang)\b")

EXPLAIN_VOCABULARY = _rx(r"\b(?:giai\s*thich|vi\s*sao|tai\s*sao|cong\s*thuc|cach\s*tinh)\b")
BOX_VOCABULARY = _rx(r"\b(?:so\s*thung|so\s*du|du\s*le|item\s*le|thung|hop)\b")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _looks_like_code(raw: str) -> bool:
    """A token written with a digit or in capitals, e.g. ABC123 or TK-01."""
    return any(c.isdigit() for c in raw) or (len(raw) >= 2 and raw.isupper())


def _cut_at_stop(original: str, folded: str, stops: list[str]) -> str:
    """Trim `original` at the first stop phrase found in its folded twin."""
    padded = f" {folded} "
    cut = len(folded)
    for phrase in stops:
        idx = padded.find(phrase)
        if idx != -1:
            cut = min(cut, idx)
    return original[:cut].strip(" \t:-,;\"'")


# ---------------------------------------------------------------------------
# Entity extraction
# ---------------------------------------------------------------------------

def extract_code(question: str) -> str | None:
    """Item code after a marker word, uppercased."""
    folded = fold(question)
    for pattern in CODE_PATTERNS:
        for m in pattern.regex.finditer(folded):
            token = m.group(1)
            raw = question[m.start(1):m.end(1)]
            if pattern.explicit and token not in NOT_A_CODE:
                return token.upper()
            if not pattern.explicit and _looks_like_code(raw):
                return token.upper()
    return None


def extract_bare_code(question: str) -> str | None:
    """A code the question opens with: 'ABC123 con bao nhieu'."""
    stripped = question.lstrip()
    m = BARE_CODE_PATTERN.match(fold(stripped))
    if not m:
        return None
    raw = stripped[m.start(1):m.end(1)]
    return m.group(1).upper() if _looks_like_code(raw) else None


def extract_item_name(question: str) -> str | None:
    """Free-text item name after a marker, cut before the trailing clause."""
    folded = fold(question)
    for _marker, regex in NAME_PATTERNS:
        for m in regex.finditer(folded):
            start, end = m.span(1)
            name = _cut_at_stop(question[start:end], folded[start:end], NAME_STOP_PHRASES)
            if name:
                return name
    return None


def extract_lookup(question: str) -> EntityLookup | None:
    """
    Resolve what the question refers to: explicit code, leading bare code,
    then free-text name. None means there is nothing to ground against.
    """
    code = extract_code(question) or extract_bare_code(question)
    if code:
        return EntityLookup("code", code)
    name = extract_item_name(question)
    if name:
        return EntityLookup("name", name)
    return None


def extract_product_name(question: str) -> str | None:
    """Product / combo name after 'sản phẩm', 'sku' or 'product'."""
    folded = fold(question)
    for _marker, regex in PRODUCT_PATTERNS:
        m = regex.search(folded)
        if not m:
            continue
        start, end = m.span(1)
        name = _cut_at_stop(question[start:end], folded[start:end], PRODUCT_STOP_PHRASES)
        if name:
            return name
    return None


def _first_match(table: list[tuple[str, re.Pattern]], question: str) -> str | None:
    folded = fold(question)
    for label, regex in table:
        if regex.search(folded):
            return label
    return None


def extract_metric(question: str) -> str | None:
    """Which inventory figure is asked for, or None for all of them."""
    return _first_match(METRIC_PATTERNS, question)


def extract_movement_status(question: str) -> str | None:
    return _first_match(MOVEMENT_STATUS_PATTERNS, question)


def extract_movement_metric(question: str) -> str:
    """'total' when counting entries ("bao nhiêu lần"), else summed quantity."""
    return "total" if MOVEMENT_COUNT_PATTERN.search(fold(question)) else "total_quantity"


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def _valid(y: int, m: int, d: int) -> bool:
    if not (1 <= y <= 9999 and 1 <= m <= 12):
        return False
    return 1 <= d <= calendar.monthrange(y, m)[1]


def _nearest_past_day_month(d: int, m: int, today: datetime) -> tuple[int, int, int] | None:
    """Most recent D/M that is not in the future, this year or last."""
    for y in (today.year, today.year - 1):
        if _valid(y, m, d) and (y, m, d) <= (today.year, today.month, today.day):
            return y, m, d
    return None


def _nearest_past_day(d: int, today: datetime) -> tuple[int, int, int] | None:
    """Most recent day-of-month d, this month or an earlier one."""
    y, m = today.year, today.month
    for _ in range(12):
        if _valid(y, m, d) and (y, m, d) <= (today.year, today.month, today.day):
            return y, m, d
        y, m = (y, m - 1) if m > 1 else (y - 1, 12)
    return None


def extract_date_range(question: str, now: datetime | None = None) -> tuple[datetime, datetime] | None:
    """
    Inclusive UTC range from D/M/YYYY tokens: first token's start of day to
    the second token's (or the first's) end of day.

    D/M without a year resolves to its nearest past occurrence; when no D/M
    token is present, "ngày N" resolves to the nearest past day N.
    """
    today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    folded = fold(question)
    dates: list[tuple[int, int, int]] = []
    for m in DATE_TOKEN.finditer(folded):
        d, mo = int(m.group(1)), int(m.group(2))
        if m.group(3):
            y = int(m.group(3))
            if _valid(y, mo, d):
                dates.append((y, mo, d))
        else:
            inferred = _nearest_past_day_month(d, mo, today)
            if inferred:
                dates.append(inferred)
    if not dates:
        for m in DAY_ONLY_TOKEN.finditer(folded):
            inferred = _nearest_past_day(int(m.group(1)), today)
            if inferred:
                dates.append(inferred)
    if not dates:
        return None

    y, mo, d = dates[0]
    start = datetime(y, mo, d, tzinfo=timezone.utc)
    y, mo, d = dates[1] if len(dates) > 1 else dates[0]
    end = datetime(y, mo, d, 23, 59, 59, 999000, tzinfo=timezone.utc)
    return start, end


# ---------------------------------------------------------------------------
# Question shape predicates
# ---------------------------------------------------------------------------

def is_movement_question(question: str) -> bool:
    """
    Explicit log/history vocabulary, or movement vocabulary together with a
    date, a date-range phrase or an entry count.
    """
    folded = fold(question)
    if LOG_VOCABULARY.search(folded):
        return True
    if not MOVEMENT_VOCABULARY.search(folded):
        return False
    return bool(
        DATE_TOKEN.search(folded)
        or RANGE_PHRASES.search(folded)
        or MOVEMENT_COUNT_PATTERN.search(folded)
    )


def is_formula_question(question: str) -> bool:
    """'Cách tính số thùng?' style questions about the boxes rule itself."""
    folded = fold(question)
    return bool(EXPLAIN_VOCABULARY.search(folded) and BOX_VOCABULARY.search(folded))
