# predictor.py
"""
Forecast when month-to-date usage crosses into the next (dearer) slab
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from config import FALLBACK_DAILY_USAGE, MARGINAL_PROBE_UNITS, TAX_RATE
from errors import InvalidArgumentError
from pricing import calculate_bill
from slabs import SlabTable, to_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumptionRecord:
    timestamp: datetime
    units: float


@dataclass(frozen=True)
class CrossingPrediction:
    next_slab_threshold: Optional[int]
    days_to_next_slab: Optional[int]
    average_daily_usage: float
    next_slab_rate: Optional[float]
    marginal_cost_per_unit: float

    @property
    def can_predict(self) -> bool:
        return self.days_to_next_slab is not None

    def to_dict(self) -> dict:
        return {
            "nextSlabThreshold": self.next_slab_threshold,
            "daysToNextSlab": self.days_to_next_slab,
            "averageDailyUsage": self.average_daily_usage,
            "nextSlabRate": self.next_slab_rate,
            "marginalCostPerUnit": self.marginal_cost_per_unit,
        }


def average_daily_usage(history: Iterable[ConsumptionRecord], fallback: float = FALLBACK_DAILY_USAGE) -> float:
    """
    Average units per day over the supplied window.

    Total units divided by the number of distinct calendar days the records
    touch (at least 1). An empty window gives `fallback`.
    """
    total = 0.0
    days = set()
    for record in history:
        total += to_units(record.units, InvalidArgumentError)
        days.add(record.timestamp.date())

    if not days:
        logger.warning(f"No consumption history, using fallback daily usage {fallback}")
        return float(fallback)

    return total / max(1, len(days))


def predict_crossing(
    slab_table: SlabTable,
    current_units,
    history: Iterable[ConsumptionRecord],
    *,
    fallback_daily_usage: float = FALLBACK_DAILY_USAGE,
    probe_units: float = MARGINAL_PROBE_UNITS,
    tax_rate: float = TAX_RATE,
) -> CrossingPrediction:
    """
    Estimate days until `current_units` reaches the top of its slab and the
    per-unit bill increase once past it.

    The marginal cost is probed: bill at (threshold + probe_units) minus bill
    at current_units, divided by probe_units. Tax makes this differ from the
    next slab's bare rate.

    Args:
        slab_table (SlabTable): validated slab table
        current_units (float): month-to-date units
        history: recent ConsumptionRecords (e.g. last 30 days)
        fallback_daily_usage (float): units/day used when history is empty
        probe_units (float): units past the threshold for the marginal probe
        tax_rate (float): tax applied by the bill calculation

    Returns:
        CrossingPrediction. days_to_next_slab is None when average usage is
        not positive; threshold and days are None in the unbounded slab.

    Raises:
        OutOfRangeError: current_units is negative
        InvalidArgumentError: current_units is not a finite number
    """
    if probe_units <= 0:
        raise InvalidArgumentError(f"Probe units must be positive, got {probe_units}")

    current_slab = slab_table.slab_containing(current_units)
    current_units = float(current_units)
    avg_usage = average_daily_usage(history, fallback_daily_usage)

    if current_slab.is_unbounded:
        return CrossingPrediction(
            next_slab_threshold=None,
            days_to_next_slab=None,
            average_daily_usage=avg_usage,
            next_slab_rate=current_slab.rate_per_unit,
            marginal_cost_per_unit=0.0,
        )

    threshold = current_slab.max_units
    units_to_threshold = threshold - current_units

    if avg_usage <= 0:
        logger.warning(f"Average daily usage is {avg_usage}, cannot predict slab crossing")
        days_to_next_slab = None
    else:
        days_to_next_slab = max(1, math.ceil(units_to_threshold / avg_usage))

    next_slab = slab_table.next_slab(current_slab)

    current_bill = calculate_bill(slab_table, current_units, tax_rate)
    probe_bill = calculate_bill(slab_table, threshold + probe_units, tax_rate)
    marginal_cost = (probe_bill.total_bill - current_bill.total_bill) / probe_units

    logger.debug(
        f"Slab {current_slab.slab_number} at {current_units} units: "
        f"{units_to_threshold} to threshold {threshold}, ~{days_to_next_slab} days"
    )

    return CrossingPrediction(
        next_slab_threshold=threshold,
        days_to_next_slab=days_to_next_slab,
        average_daily_usage=avg_usage,
        next_slab_rate=next_slab.rate_per_unit if next_slab else None,
        marginal_cost_per_unit=marginal_cost,
    )
