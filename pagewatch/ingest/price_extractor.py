"""Extract a product price from a rendered page.

Sources are tried from most to least trustworthy:

1. JSON-LD structured data (schema.org Product / ProductGroup)
2. Open Graph / product meta tags
3. schema.org microdata
4. Known marketplace DOM selectors (Amazon, Bol.com, generic shops)
5. Currency patterns in free text

The first source that yields anything wins; within a source the candidate
with the lowest priority number is chosen.
"""

import json
import logging
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterator, List, Optional, Tuple

from selectolax.parser import HTMLParser

from pagewatch.config import settings

logger = logging.getLogger(__name__)

# Currency symbols to ISO codes (checked in this order)
CURRENCY_MAP = {
    "€": "EUR",
    "$": "USD",
    "£": "GBP",
    "¥": "JPY",
    "CHF": "CHF",
    "kr": "SEK",
    "zł": "PLN",
}

CURRENCY_CODE_RE = re.compile(r"\b(EUR|USD|GBP|CHF|SEK|PLN|JPY)\b", re.IGNORECASE)
THOUSANDS_SUFFIX_RE = re.compile(r"(\d)\s*[kK]\s*$")

MAX_OFFER_DEPTH = 5

# Ordered by specificity, most reliable first
DOM_SELECTORS = [
    # Amazon
    "#corePrice_feature_div .a-price .a-offscreen",
    ".priceToPay .a-offscreen",
    '.a-price[data-a-size="xl"] .a-offscreen',
    '.a-price[data-a-size="l"] .a-offscreen',
    '.a-price[data-a-size="b"] .a-offscreen',
    '.a-price[data-a-color="base"] .a-offscreen',
    ".a-price .a-offscreen",
    ".a-price-whole",
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    "#priceblock_saleprice",
    '[data-a-color="price"] .a-offscreen',
    "#apex_offerDisplay_desktop .a-offscreen",
    ".apexPriceToPay .a-offscreen",
    "#price_inside_buybox",
    "#newBuyBoxPrice",
    "#buybox .a-price .a-offscreen",
    # Bol.com
    ".promo-price",
    ".buy-block__price",
    '[data-test="price"]',
    # Other e-commerce
    ".product-price",
    ".price-value",
    '[itemprop="price"]',
    "[data-price]",
    # Generic fallbacks
    ".price",
    ".current-price",
    ".amount",
]

_AMOUNT = r"\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{2})?"
TEXT_PATTERNS = [
    re.compile(rf"(?:€|EUR)\s*({_AMOUNT})", re.IGNORECASE),
    re.compile(rf"(?:\$|USD)\s*({_AMOUNT})", re.IGNORECASE),
    re.compile(rf"(?:£|GBP)\s*({_AMOUNT})", re.IGNORECASE),
    re.compile(rf"({_AMOUNT})\s*(?:€|EUR)", re.IGNORECASE),
    re.compile(rf"({_AMOUNT})\s*(?:\$|USD)", re.IGNORECASE),
]

PRIORITY_META = 10
PRIORITY_MICRODATA = 20
PRIORITY_DOM = 30
PRIORITY_TEXT = 100


@dataclass
class PriceCandidate:
    """A price found on the page."""

    price: Decimal
    currency: str
    source: str  # json-ld | meta-tag | microdata | dom-heuristic | text-pattern
    raw: str
    priority: int
    selector: Optional[str] = None

    @property
    def display(self) -> str:
        return f"{format_price(self.price)} {self.currency}"


def format_price(price: Decimal) -> str:
    return str(price.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_price(raw: str, default_currency: str = None) -> Optional[Tuple[Decimal, str]]:
    """
    Parse a price string like "€ 89,99", "$1,234.56" or "$1.5k".

    Args:
        raw: Price text
        default_currency: Currency used when the text carries none

    Returns:
        (price, currency) or None if no positive number could be read
    """
    if not raw or not isinstance(raw, str):
        return None

    currency = default_currency or settings.default_currency
    cleaned = raw.strip()

    for symbol, code in CURRENCY_MAP.items():
        if symbol in cleaned:
            currency = code
            cleaned = cleaned.replace(symbol, "", 1)
            break

    code_match = CURRENCY_CODE_RE.search(cleaned)
    if code_match:
        currency = code_match.group(1).upper()
        cleaned = cleaned.replace(code_match.group(0), "", 1)

    multiplier = Decimal(1)
    if THOUSANDS_SUFFIX_RE.search(cleaned):
        multiplier = Decimal(1000)

    cleaned = re.sub(r"[^\d.,]", "", cleaned)
    if not re.search(r"\d", cleaned):
        return None

    last_comma = cleaned.rfind(",")
    last_period = cleaned.rfind(".")
    if last_comma > last_period:
        # European: 1.234,56
        number = cleaned.replace(".", "").replace(",", ".")
    else:
        # US: 1,234.56
        number = cleaned.replace(",", "")
        if number.count(".") > 1:
            number = number.replace(".", "")

    match = re.match(r"\d*\.?\d*", number)
    try:
        price = Decimal(match.group(0).rstrip(".") or "0") * multiplier
    except InvalidOperation:
        return None

    if price <= 0:
        return None
    return price, currency


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Read a JSON-LD numeric field (number or string)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        price = Decimal(str(value))
    else:
        parsed = parse_price(str(value))
        if parsed is None:
            return None
        price = parsed[0]
    return price if price > 0 else None


def collect_offer_candidates(
    offer: Any,
    default_currency: str,
    depth: int = 0,
) -> List[Tuple[int, PriceCandidate]]:
    """
    Flatten one JSON-LD offer (and its nested offers) into prioritized candidates.

    Priorities: ``price`` 1, ``priceSpecification.price`` 2, ``highPrice`` when
    equal to ``lowPrice`` 3, ``lowPrice`` 4.
    """
    if depth > MAX_OFFER_DEPTH or not isinstance(offer, dict):
        return []

    found = []
    currency = offer.get("priceCurrency") or default_currency

    def add(priority: int, value: Any, cur: str):
        price = _to_decimal(value)
        if price is not None:
            found.append((
                priority,
                PriceCandidate(
                    price=price,
                    currency=str(cur).upper(),
                    source="json-ld",
                    raw=f"{cur}{value}",
                    priority=priority,
                ),
            ))

    if offer.get("price") is not None:
        add(1, offer["price"], currency)

    spec = offer.get("priceSpecification")
    if isinstance(spec, list):
        spec = spec[0] if spec else None
    if isinstance(spec, dict) and spec.get("price"):
        add(2, spec["price"], spec.get("priceCurrency") or currency)

    if offer.get("@type") == "AggregateOffer" or offer.get("lowPrice"):
        high, low = offer.get("highPrice"), offer.get("lowPrice")
        if high is not None and high == low:
            add(3, high, currency)
        if low is not None:
            add(4, low, currency)

    nested = offer.get("offers")
    if nested:
        for item in nested if isinstance(nested, list) else [nested]:
            found.extend(collect_offer_candidates(item, default_currency, depth + 1))

    return found


def _is_product(item: dict) -> bool:
    item_type = item.get("@type", "")
    if isinstance(item_type, list):
        return any("Product" in str(t) for t in item_type)
    return "Product" in str(item_type)


def _iter_json_ld_items(html_tree: HTMLParser) -> Iterator[dict]:
    for script in html_tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.text() or "")
        except json.JSONDecodeError:
            continue
        for item in data if isinstance(data, list) else [data]:
            if not isinstance(item, dict):
                continue
            yield item
            graph = item.get("@graph")
            if isinstance(graph, list):
                for graph_item in graph:
                    if isinstance(graph_item, dict):
                        yield graph_item


class PriceExtractor:
    """Ranks price candidates found in a page's HTML and text."""

    def __init__(self, default_currency: str = None, text_scan_chars: int = None):
        self.default_currency = default_currency or settings.default_currency
        self.text_scan_chars = text_scan_chars or settings.price_text_scan_chars

    def extract(
        self,
        html: str,
        element_text: Optional[str] = None,
        page_text: Optional[str] = None,
    ) -> Optional[PriceCandidate]:
        """
        Pick the most trustworthy price on the page.

        Args:
            html: Rendered page HTML (``page.content()``)
            element_text: Text of the user's selected element, if any
            page_text: Visible body text, scanned when there is no element text

        Returns:
            Best PriceCandidate or None
        """
        tree = HTMLParser(html or "")
        for tier in (
            self._from_json_ld,
            self._from_meta_tags,
            self._from_microdata,
            self._from_dom_selectors,
        ):
            candidates = tier(tree)
            if candidates:
                best = min(candidates, key=lambda c: c.priority)
                logger.debug(f"Price via {best.source} (priority {best.priority}): {best.display}")
                return best

        candidates = self._from_text(element_text or page_text or "")
        if candidates:
            best = min(candidates, key=lambda c: c.priority)
            logger.debug(f"Price via text pattern: {best.display}")
            return best

        logger.debug("No price candidates found")
        return None

    def collect_candidates(
        self,
        html: str,
        element_text: Optional[str] = None,
        page_text: Optional[str] = None,
    ) -> List[PriceCandidate]:
        """All candidates from every source, most trusted first."""
        tree = HTMLParser(html or "")
        candidates = (
            self._from_json_ld(tree)
            + self._from_meta_tags(tree)
            + self._from_microdata(tree)
            + self._from_dom_selectors(tree)
            + self._from_text(element_text or page_text or "")
        )
        return sorted(candidates, key=lambda c: c.priority)

    def _from_json_ld(self, tree: HTMLParser) -> List[PriceCandidate]:
        ranked: List[Tuple[int, PriceCandidate]] = []
        for item in _iter_json_ld_items(tree):
            if not _is_product(item) or not item.get("offers"):
                continue
            offers = item["offers"]
            for offer in offers if isinstance(offers, list) else [offers]:
                ranked.extend(collect_offer_candidates(offer, self.default_currency))
        ranked.sort(key=lambda pair: pair[0])
        return [candidate for _, candidate in ranked]

    @staticmethod
    def _meta_content(tree: HTMLParser, *properties: str) -> Optional[str]:
        for prop in properties:
            node = tree.css_first(f'meta[property="{prop}"]')
            if node is not None and node.attributes.get("content"):
                return node.attributes["content"]
        return None

    def _from_meta_tags(self, tree: HTMLParser) -> List[PriceCandidate]:
        raw = self._meta_content(tree, "og:price:amount", "product:price:amount")
        if not raw:
            return []
        meta_currency = self._meta_content(tree, "og:price:currency", "product:price:currency")

        parsed = parse_price(raw, self.default_currency)
        if parsed is None:
            return []
        price, currency = parsed
        return [PriceCandidate(
            price=price,
            currency=(meta_currency or currency).upper(),
            source="meta-tag",
            raw=f"{meta_currency or ''}{raw}",
            priority=PRIORITY_META,
        )]

    def _from_microdata(self, tree: HTMLParser) -> List[PriceCandidate]:
        node = tree.css_first('[itemprop="price"]')
        if node is None:
            return []
        raw = node.attributes.get("content") or node.text(strip=True)
        currency_node = tree.css_first('[itemprop="priceCurrency"]')
        micro_currency = None
        if currency_node is not None:
            micro_currency = currency_node.attributes.get("content") or currency_node.text(strip=True)

        parsed = parse_price(raw, self.default_currency)
        if parsed is None:
            return []
        price, currency = parsed
        return [PriceCandidate(
            price=price,
            currency=(micro_currency or currency).upper(),
            source="microdata",
            raw=f"{micro_currency or ''}{raw}",
            priority=PRIORITY_MICRODATA,
        )]

    def _from_dom_selectors(self, tree: HTMLParser) -> List[PriceCandidate]:
        candidates = []
        for index, selector in enumerate(DOM_SELECTORS):
            try:
                node = tree.css_first(selector)
            except Exception as e:
                logger.debug(f"Selector {selector} failed: {e}")
                continue
            if node is None:
                continue
            text = (
                node.text(strip=True)
                or node.attributes.get("content")
                or node.attributes.get("data-price")
            )
            if not text or not re.search(r"\d", text):
                continue
            parsed = parse_price(text, self.default_currency)
            if parsed is None:
                continue
            price, currency = parsed
            candidates.append(PriceCandidate(
                price=price,
                currency=currency,
                source="dom-heuristic",
                raw=text,
                priority=PRIORITY_DOM + index,
                selector=selector,
            ))
        return candidates

    def _from_text(self, text: str) -> List[PriceCandidate]:
        if not text:
            return []
        text = text[: self.text_scan_chars]
        candidates = []
        for index, pattern in enumerate(TEXT_PATTERNS):
            match = pattern.search(text)
            if not match:
                continue
            parsed = parse_price(match.group(0), self.default_currency)
            if parsed is None:
                continue
            price, currency = parsed
            candidates.append(PriceCandidate(
                price=price,
                currency=currency,
                source="text-pattern",
                raw=match.group(0),
                priority=PRIORITY_TEXT + index,
            ))
        return candidates
