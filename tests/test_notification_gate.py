"""Tests for notification suppression rules."""

from decimal import Decimal

import pytest

from pagewatch.notify.gate import price_allows_notification, should_notify


class TestShouldNotify:
    def test_no_rules_always_notifies(self):
        assert should_notify("anything", None) is True
        assert should_notify("anything", []) is True

    def test_contains_is_case_insensitive(self):
        rules = [{"predicate": "contains", "value": "In Stock"}]

        assert should_notify("Now IN STOCK", rules) is True
        assert should_notify("Sold out", rules) is False

    def test_not_contains(self):
        rules = [{"predicate": "not_contains", "value": "sold out"}]

        assert should_notify("Available", rules) is True
        assert should_notify("SOLD OUT", rules) is False

    def test_last_rule_wins(self):
        rules = [
            {"predicate": "contains", "value": "in stock"},
            {"predicate": "not_contains", "value": "sold out"},
        ]

        # First rule fails, second passes: the second decides
        assert should_notify("Available soon", rules) is True
        # First rule passes, second fails
        assert should_notify("in stock elsewhere, sold out here", rules) is False

    def test_unknown_predicate_is_skipped(self):
        rules = [
            {"predicate": "contains", "value": "deal"},
            {"predicate": "regex", "value": ".*"},
        ]

        assert should_notify("no offers", rules) is False
        assert should_notify("great deal", rules) is True

    def test_missing_text(self):
        assert should_notify(None, [{"predicate": "not_contains", "value": "x"}]) is True


class TestPriceThresholds:
    @pytest.mark.parametrize(
        "price,low,high,expected",
        [
            (Decimal("20"), None, None, True),
            (Decimal("9.99"), Decimal("10"), None, True),
            (Decimal("10"), Decimal("10"), None, True),
            (Decimal("10.01"), Decimal("10"), None, False),
            (Decimal("50"), None, Decimal("50"), True),
            (Decimal("49"), None, Decimal("50"), False),
            (Decimal("30"), Decimal("10"), Decimal("50"), False),
            (Decimal("60"), Decimal("10"), Decimal("50"), True),
            (None, Decimal("10"), None, False),
        ],
    )
    def test_thresholds(self, price, low, high, expected):
        assert price_allows_notification(price, low, high) is expected
