"""Tests for price parsing and candidate ranking."""

import json
from decimal import Decimal

import pytest

from pagewatch.ingest.price_extractor import (
    PriceExtractor,
    collect_offer_candidates,
    format_price,
    parse_price,
)


def json_ld(data) -> str:
    return f'<script type="application/ld+json">{json.dumps(data)}</script>'


def page(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


@pytest.fixture
def extractor():
    return PriceExtractor(default_currency="EUR")


class TestParsePrice:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("€ 1.234,56", (Decimal("1234.56"), "EUR")),
            ("$1,234.56", (Decimal("1234.56"), "USD")),
            ("£89.99", (Decimal("89.99"), "GBP")),
            ("12.99 EUR", (Decimal("12.99"), "EUR")),
            ("1.234.567", (Decimal("1234567"), "EUR")),
            ("49,95", (Decimal("49.95"), "EUR")),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_price(raw, "EUR") == expected

    def test_thousands_suffix(self):
        price, currency = parse_price("$1.5k")
        assert price == Decimal("1500")
        assert currency == "USD"

    @pytest.mark.parametrize("raw", ["", "free", "€ 0,00", None])
    def test_unreadable_or_zero(self, raw):
        assert parse_price(raw) is None

    def test_default_currency_applies_without_marker(self):
        assert parse_price("10", "CHF") == (Decimal("10"), "CHF")

    def test_format_price_rounds_to_cents(self):
        assert format_price(Decimal("1500")) == "1500.00"
        assert format_price(Decimal("9.995")) == "10.00"


class TestJsonLd:
    """schema.org structured data, including nested offers."""

    def test_offer_price(self, extractor):
        html = page(json_ld({
            "@type": "Product",
            "offers": {"@type": "Offer", "price": 19.99, "priceCurrency": "usd"},
        }))

        candidate = extractor.extract(html)

        assert candidate.source == "json-ld"
        assert candidate.price == Decimal("19.99")
        assert candidate.currency == "USD"
        assert candidate.display == "19.99 USD"

    def test_direct_price_beats_price_specification(self, extractor):
        html = page(json_ld({
            "@type": "Product",
            "offers": {"price": "10.00", "priceSpecification": {"price": "9.00"}},
        }))

        assert extractor.extract(html).price == Decimal("10.00")

    def test_aggregate_offer_uses_low_price(self, extractor):
        html = page(json_ld({
            "@type": "Product",
            "offers": {"@type": "AggregateOffer", "lowPrice": "5.00", "highPrice": "8.00"},
        }))

        candidate = extractor.extract(html)

        assert candidate.price == Decimal("5.00")
        assert candidate.priority == 4

    def test_equal_high_and_low_price(self):
        found = collect_offer_candidates(
            {"@type": "AggregateOffer", "lowPrice": "7", "highPrice": "7"}, "EUR"
        )
        assert [priority for priority, _ in found] == [3, 4]

    def test_graph_and_product_group(self, extractor):
        html = page(json_ld({
            "@context": "https://schema.org",
            "@graph": [
                {"@type": "WebPage", "name": "Shop"},
                {"@type": ["ProductGroup"], "offers": [{"price": "29.95"}]},
            ],
        }))

        assert extractor.extract(html).price == Decimal("29.95")

    def test_non_product_items_ignored(self, extractor):
        html = page(json_ld({"@type": "Organization", "offers": {"price": "1.00"}}))

        assert extractor.extract(html) is None

    def test_invalid_json_is_skipped(self, extractor):
        html = page(
            '<script type="application/ld+json">{not json</script>'
            + json_ld({"@type": "Product", "offers": {"price": "3.50"}})
        )

        assert extractor.extract(html).price == Decimal("3.50")

    def test_nesting_depth_is_bounded(self):
        offer = {"price": "1.00"}
        for _ in range(7):
            offer = {"offers": offer}

        assert collect_offer_candidates(offer, "EUR") == []


class TestOtherSources:
    def test_meta_tags(self, extractor):
        html = page(
            '<meta property="og:price:amount" content="24.95">'
            '<meta property="og:price:currency" content="usd">'
        )

        candidate = extractor.extract(html)

        assert candidate.source == "meta-tag"
        assert candidate.price == Decimal("24.95")
        assert candidate.currency == "USD"

    def test_product_meta_fallback(self, extractor):
        html = page('<meta property="product:price:amount" content="11.00">')

        assert extractor.extract(html).price == Decimal("11.00")

    def test_microdata(self, extractor):
        html = page(body=(
            '<span itemprop="price" content="12.50">€12,50</span>'
            '<meta itemprop="priceCurrency" content="EUR">'
        ))

        candidate = extractor.extract(html)

        assert candidate.source == "microdata"
        assert candidate.price == Decimal("12.50")

    def test_dom_selector(self, extractor):
        html = page(body='<div class="product-price">€ 49,95</div>')

        candidate = extractor.extract(html)

        assert candidate.source == "dom-heuristic"
        assert candidate.selector == ".product-price"
        assert candidate.price == Decimal("49.95")

    def test_more_specific_dom_selector_wins(self, extractor):
        html = page(body=(
            '<span class="price">€ 5,00</span>'
            '<span class="a-price"><span class="a-offscreen">$19.99</span></span>'
        ))

        candidate = extractor.extract(html)

        assert candidate.price == Decimal("19.99")
        assert candidate.currency == "USD"

    def test_text_pattern(self, extractor):
        candidate = extractor.extract(page(), page_text="Now only €89,99 while stocks last")

        assert candidate.source == "text-pattern"
        assert candidate.price == Decimal("89.99")
        assert candidate.currency == "EUR"

    def test_element_text_preferred_over_page_text(self, extractor):
        candidate = extractor.extract(page(), element_text="€ 15,00", page_text="€ 99,00")

        assert candidate.price == Decimal("15.00")

    def test_text_scan_is_truncated(self):
        extractor = PriceExtractor(text_scan_chars=10)

        assert extractor.extract(page(), page_text="x" * 20 + " €5,00") is None


class TestRanking:
    def test_structured_data_beats_text(self, extractor):
        html = page(
            json_ld({"@type": "Product", "offers": {"price": "20.00"}}),
            '<div class="price">€ 25,00</div>',
        )

        candidate = extractor.extract(html, page_text="€ 30,00")

        assert candidate.source == "json-ld"
        assert candidate.price == Decimal("20.00")

    def test_collect_candidates_sorted_across_sources(self, extractor):
        html = page(
            json_ld({"@type": "Product", "offers": {"price": "20.00"}})
            + '<meta property="og:price:amount" content="21.00">',
            '<div class="price">€ 25,00</div>',
        )

        candidates = extractor.collect_candidates(html, page_text="€ 30,00")

        assert [c.source for c in candidates] == ["json-ld", "meta-tag", "dom-heuristic", "text-pattern"]
        assert [c.priority for c in candidates] == sorted(c.priority for c in candidates)

    def test_nothing_found(self, extractor):
        assert extractor.extract(page(body="<p>Sold out</p>"), page_text="Sold out") is None
