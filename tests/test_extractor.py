"""
Tests for the table-driven entity extractor.
Questions are written both with and without Vietnamese accents.
"""

from datetime import datetime, timezone

import pytest

from khobot.agents import extractor
from khobot.agents.extractor import EntityLookup

UTC = timezone.utc


# ---------------------------------------------------------------------------
# Codes and names
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("question, code", [
    ("Ma hang ABC123 ton kho bao nhieu?", "ABC123"),
    ("Mã mặt hàng: tk-01 còn bao nhiêu", "TK-01"),
    ("mã abc123 còn bao nhiêu", "ABC123"),
    ("Item XYZ9 da xuat bao nhieu", "XYZ9"),
])
def test_extract_code(question, code):
    assert extractor.extract_code(question) == code


def test_code_marker_needs_code_shaped_token():
    """After a non-explicit marker, a plain word is a name, not a code."""
    assert extractor.extract_code("Mặt hàng Thạch kem còn bao nhiêu?") is None


def test_code_skips_filler_words():
    assert extractor.extract_code("Mã của mặt hàng này") is None


def test_bare_code_at_start():
    assert extractor.extract_bare_code("ABC123 con bao nhieu") == "ABC123"
    assert extractor.extract_bare_code("thach con bao nhieu") is None
    assert extractor.extract_bare_code("bao nhieu thung") is None


def test_item_name_keeps_accents():
    assert extractor.extract_item_name("Mặt hàng Thạch kem còn mấy thùng") == "Thạch kem"


def test_lookup_prefers_code_over_name():
    assert extractor.extract_lookup("Ma hang ABC123 ton kho bao nhieu?") == EntityLookup("code", "ABC123")
    assert extractor.extract_lookup("Mặt hàng Thạch còn bao nhiêu?") == EntityLookup("name", "Thạch")


def test_lookup_none_without_subject():
    assert extractor.extract_lookup("xin chao") is None


@pytest.mark.parametrize("question", [
    "San pham Combo A gom nhung item nao?",
    "Sản phẩm Combo A có bao nhiêu item?",
    "product combo a co nhung item gi",
])
def test_extract_product_name(question):
    assert extractor.extract_product_name(question).lower() == "combo a"


# ---------------------------------------------------------------------------
# Metrics and statuses
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("question, metric", [
    ("So luong moi thung cua ABC123 la bao nhieu?", "quantity_per_box"),
    ("Ma hang ABC123 con may thung?", "boxes"),
    ("Ma hang ABC123 da nhap bao nhieu", "received"),
    ("Item ABC123 da xuat bao nhieu", "delivered"),
    ("Ma hang ABC123 ton kho bao nhieu?", "rest"),
    ("Ma hang ABC123", None),
])
def test_extract_metric(question, metric):
    assert extractor.extract_metric(question) == metric


def test_movement_status():
    assert extractor.extract_movement_status("Lịch sử xuất kho ABC123") == "delivered"
    assert extractor.extract_movement_status("lich su nhap kho ABC123") == "received"
    assert extractor.extract_movement_status("lich su tra hang ABC123") == "returned"
    assert extractor.extract_movement_status("lich su ABC123") is None


def test_movement_metric():
    assert extractor.extract_movement_metric("ABC123 xuat bao nhieu lan") == "total"
    assert extractor.extract_movement_metric("ABC123 xuat tong bao nhieu") == "total_quantity"


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def test_date_range_two_tokens():
    start, end = extractor.extract_date_range("xuat kho tu 20/11/2025 den 20/12/2025")
    assert start == datetime(2025, 11, 20, tzinfo=UTC)
    assert end == datetime(2025, 12, 20, 23, 59, 59, 999000, tzinfo=UTC)


def test_date_range_single_day():
    start, end = extractor.extract_date_range("nhap kho ngay 5/12/2025")
    assert start == datetime(2025, 12, 5, tzinfo=UTC)
    assert end == datetime(2025, 12, 5, 23, 59, 59, 999000, tzinfo=UTC)


def test_day_month_without_year_is_nearest_past():
    now = datetime(2026, 1, 10, 12, tzinfo=UTC)
    start, _ = extractor.extract_date_range("xuat kho 25/12", now=now)
    assert start == datetime(2025, 12, 25, tzinfo=UTC)


def test_day_only_is_nearest_past():
    now = datetime(2026, 1, 10, 12, tzinfo=UTC)
    assert extractor.extract_date_range("xuat kho ngay 5", now=now)[0] == datetime(2026, 1, 5, tzinfo=UTC)
    assert extractor.extract_date_range("xuat kho ngay 15", now=now)[0] == datetime(2025, 12, 15, tzinfo=UTC)


def test_invalid_date_ignored():
    assert extractor.extract_date_range("xuat kho 31/2/2025") is None
    assert extractor.extract_date_range("xuat kho ABC123") is None


def test_last_representable_day_has_inclusive_end():
    start, end = extractor.extract_date_range("xuat kho 31/12/9999")
    assert start == datetime(9999, 12, 31, tzinfo=UTC)
    assert end == datetime(9999, 12, 31, 23, 59, 59, 999000, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Question shapes
# ---------------------------------------------------------------------------

def test_movement_question_detection():
    assert extractor.is_movement_question("Lịch sử nhập kho mã hàng ABC123")
    assert extractor.is_movement_question("ABC123 xuat kho bao nhieu lan")
    assert extractor.is_movement_question("ABC123 xuat kho tu 1/12/2025")
    assert not extractor.is_movement_question("Ma hang ABC123 da nhap bao nhieu?")


def test_formula_question():
    assert extractor.is_formula_question("Cách tính số thùng là gì?")
    assert not extractor.is_formula_question("Ma hang ABC123 con may thung?")
