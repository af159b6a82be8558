"""Price-change detection: direction, magnitude, significance and alert severity.

Percentages are computed with Decimal and rounded HALF_UP to one decimal
before any threshold comparison, so 100.00 -> 98.00 is exactly -2.0%.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.db.price_store import PriceStore

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2}

_TENTH = Decimal("0.1")
_CENTS = Decimal("0.01")


@dataclass
class PriceChange:
    """Comparison of two consecutive prices."""

    old_price: Optional[Decimal]
    new_price: Decimal
    absolute_change: Decimal
    percent_change: Optional[float]  # None when there is no usable old price
    direction: str  # down | up | none
    is_significant: bool
    is_new_price: bool = False


@dataclass
class AlertDecision:
    should_alert: bool
    severity: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class DetectionResult:
    detected: bool
    product_id: Optional[int] = None
    reason: Optional[str] = None
    change: Optional[PriceChange] = None
    alert: Optional[AlertDecision] = None
    price: Optional[Decimal] = None


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class PriceChangeDetector:
    """Compares the two most recent prices of a product."""

    def __init__(self, store: PriceStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings

    @property
    def significant_threshold(self) -> float:
        return self.settings.price_change_significant_percent

    def calculate(self, old_price, new_price) -> PriceChange:
        """
        Compare two prices.

        Args:
            old_price: Previous price (None or 0 means there is nothing to compare)
            new_price: Latest price

        Returns:
            PriceChange with percent rounded to one decimal
        """
        new = _to_decimal(new_price)
        if old_price is None or _to_decimal(old_price) == 0:
            return PriceChange(
                old_price=None if old_price is None else _to_decimal(old_price),
                new_price=new,
                absolute_change=Decimal("0.00"),
                percent_change=None,
                direction="none",
                is_significant=False,
                is_new_price=True,
            )

        old = _to_decimal(old_price)
        absolute = (new - old).quantize(_CENTS, rounding=ROUND_HALF_UP)
        percent = float((Decimal(100) * (new - old) / old).quantize(_TENTH, rounding=ROUND_HALF_UP))

        if new < old:
            direction = "down"
        elif new > old:
            direction = "up"
        else:
            direction = "none"

        return PriceChange(
            old_price=old,
            new_price=new,
            absolute_change=absolute,
            percent_change=percent,
            direction=direction,
            is_significant=abs(percent) >= self.significant_threshold,
        )

    def severity_for(self, change: PriceChange) -> Optional[str]:
        """Severity bucket of a change, or None if the change is not alertable."""
        if change.is_new_price or change.percent_change is None:
            return None
        magnitude = abs(change.percent_change)
        s = self.settings

        if change.direction == "down":
            if magnitude >= s.price_drop_high_percent:
                return "high"
            if magnitude >= s.price_drop_medium_percent:
                return "medium"
            if magnitude >= self.significant_threshold:
                return "low"
            return None

        if change.direction == "up":
            if magnitude >= s.price_increase_high_percent:
                return "high"
            if magnitude >= s.price_increase_medium_percent:
                return "medium"
            return None

        return None

    def should_alert(self, change: PriceChange) -> AlertDecision:
        """Decide whether a change deserves an alert."""
        if change.is_new_price:
            return AlertDecision(should_alert=False, reason=None)

        severity = self.severity_for(change)
        if severity is None:
            return AlertDecision(should_alert=False, reason="below_alert_threshold")

        if change.direction == "down":
            minimum, reason = self.settings.min_drop_alert_severity, "price_drop"
        else:
            minimum, reason = self.settings.min_increase_alert_severity, "price_increase"

        if SEVERITY_ORDER[severity] >= SEVERITY_ORDER.get(minimum, 0):
            return AlertDecision(should_alert=True, severity=severity, reason=reason)
        return AlertDecision(should_alert=False, severity=severity, reason="below_min_severity")

    async def detect(self, product_id: int, site: str = "unknown") -> DetectionResult:
        """
        Compare the latest price of a product with the one before it.

        Pure with respect to the stored rows: calling it twice returns the same result.
        """
        rows = await self.store.last_two_prices(product_id)
        if not rows:
            return DetectionResult(detected=False, product_id=product_id, reason="no_price_data")

        latest = rows[0]
        if len(rows) == 1:
            logger.debug(f"First price recorded for product {product_id}: {latest.price}")
            return DetectionResult(
                detected=False, product_id=product_id, reason="first_price", price=latest.price
            )

        previous = rows[1]
        change = self.calculate(previous.price, latest.price)
        if not change.is_significant:
            logger.debug(
                f"Price change below threshold for product {product_id}: "
                f"{previous.price} -> {latest.price} ({change.percent_change}%)"
            )
            return DetectionResult(
                detected=False,
                product_id=product_id,
                reason="below_threshold",
                change=change,
                price=latest.price,
            )

        decision = self.should_alert(change)
        metrics.record_price_change(site, change.direction)
        logger.info(
            f"Significant price change detected for product {product_id}: "
            f"{change.direction} {abs(change.percent_change):.1f}% "
            f"({previous.price} -> {latest.price}), alert={decision.should_alert}"
        )
        return DetectionResult(
            detected=True,
            product_id=product_id,
            change=change,
            alert=decision,
            price=latest.price,
        )
