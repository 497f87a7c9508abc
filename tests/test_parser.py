"""Tests for the receipt text parser."""

import pytest

from receipt_split.parser import normalize_line, parse_line, parse_receipt_text


class TestNormalizeLine:
    """Number format clean-up."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Milch 1,29 €", "Milch 1.29"),
            ("TV  1.299,00", "TV 1299.00"),
            ("Brot   2.50", "Brot 2.50"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_line(raw) == expected


class TestParseLine:
    """Recognised line layouts."""

    def test_quantity_times_unit_price(self):
        item = parse_line("Milch 2 x 1,50 3,00")

        assert item.name == "Milch"
        assert item.quantity == 2
        assert item.unit_price == 1.5
        assert item.total == 3.0

    def test_quantity_and_total(self):
        item = parse_line("Apfel 3 2,40")

        assert item.name == "Apfel"
        assert item.quantity == 3
        assert item.total == 2.4
        assert item.unit_price == pytest.approx(0.8)

    def test_times_quantity_and_total(self):
        item = parse_line("Wasser x 2 1,00")

        assert item.name == "Wasser"
        assert item.quantity == 2
        assert item.total == 1.0

    def test_price_only(self):
        item = parse_line("Brot 1.234,50")

        assert item.name == "Brot"
        assert item.quantity == 1
        assert item.total == 1234.5

    def test_weighed_goods_count_as_one(self):
        item = parse_line("Käse 0,5 x 4,00 2,00")

        assert item.quantity == 1
        assert item.total == 2.0

    def test_base_value_uses_rate(self):
        item = parse_line("Coffee 4,40", rate=1.1)
        assert item.total_base == pytest.approx(4.0)

    @pytest.mark.parametrize("line", ["Vielen Dank!", "", "12,50"])
    def test_unparseable(self, line):
        assert parse_line(line) is None


def test_parse_receipt_text_skips_noise():
    text = "\n".join(
        [
            "REWE Markt",
            "Milch 2 x 1,50 3,00",
            "",
            "Brot 2,20",
            "Danke",
        ]
    )

    items = parse_receipt_text(text)

    assert [item.name for item in items] == ["Milch", "Brot"]
    assert all(item.total_base == item.total for item in items)
