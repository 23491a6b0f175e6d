"""Notification suppression rules."""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

CONTAINS = "contains"
NOT_CONTAINS = "not_contains"


def should_notify(text: Optional[str], rules: Optional[Iterable[Dict[str, Any]]]) -> bool:
    """
    Decide whether a detected change should produce a notification.

    Rules are evaluated in order against the lower-cased text and the result
    of the last evaluated rule wins, so ``[contains "in stock",
    not_contains "sold out"]`` is decided by the second rule alone. With no
    rules every change notifies. Rules with an unknown predicate are skipped.

    Args:
        text: Newly extracted value
        rules: Sequence of ``{"predicate": ..., "value": ...}`` dicts

    Returns:
        True if the change should be notified
    """
    if not rules:
        return True

    haystack = (text or "").lower()
    result = True
    for rule in rules:
        predicate = (rule or {}).get("predicate")
        needle = str((rule or {}).get("value") or "").lower()

        if predicate == CONTAINS:
            result = needle in haystack
        elif predicate == NOT_CONTAINS:
            result = needle not in haystack
        else:
            logger.debug(f"Skipping notification rule with unknown predicate: {predicate!r}")
    return result


def price_allows_notification(
    price: Optional[Decimal],
    threshold_min: Optional[Decimal],
    threshold_max: Optional[Decimal],
) -> bool:
    """
    Price thresholds: alert on drops to ``min`` or rises to ``max``.

    With no thresholds set every price change is allowed.
    """
    if threshold_min is None and threshold_max is None:
        return True
    if price is None:
        return False
    if threshold_min is not None and price <= threshold_min:
        return True
    if threshold_max is not None and price >= threshold_max:
        return True
    return False
