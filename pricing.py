# pricing.py
"""
Progressive (slab) bill calculation + tax
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

from config import TAX_RATE
from errors import InvalidArgumentError
from slabs import SlabTable, to_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlabCharge:
    slab_number: int
    units_billed_in_slab: float
    rate: float
    amount: int

    def to_dict(self) -> dict:
        return {
            "slab": self.slab_number,
            "units": self.units_billed_in_slab,
            "rate": self.rate,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class BillResult:
    slab_breakdown: Tuple[SlabCharge, ...]
    energy_charges: int
    taxes: int
    total_bill: int

    @property
    def total_units(self) -> float:
        return sum(charge.units_billed_in_slab for charge in self.slab_breakdown)

    def to_dict(self) -> dict:
        return {
            "slabBreakdown": [charge.to_dict() for charge in self.slab_breakdown],
            "energyCharges": self.energy_charges,
            "taxes": self.taxes,
            "totalBill": self.total_bill,
        }


def round_currency(value: float) -> int:
    """Round half up to a whole currency unit"""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_bill(slab_table: SlabTable, total_units, tax_rate: float = TAX_RATE) -> BillResult:
    """
    Spread `total_units` over the slabs progressively and add tax.

    Each slab bills at most its own width (max - min + 1); the unbounded
    last slab takes whatever is left.

    Args:
        slab_table (SlabTable): validated slab table
        total_units (float): units consumed in the billing month
        tax_rate (float): tax applied to the energy charges

    Returns:
        BillResult: per-slab charges, energy charges, taxes and total bill,
        all amounts rounded to whole currency units

    Raises:
        InvalidArgumentError: total_units is negative or not a number
    """
    remaining = to_units(total_units, InvalidArgumentError)
    charges = []
    energy_charges = 0.0

    for slab in slab_table.slabs():
        if remaining <= 0:
            break

        capacity = slab.capacity()
        if capacity is None:
            capacity = remaining
        billed_here = min(remaining, capacity)
        amount = billed_here * slab.rate_per_unit

        charges.append(SlabCharge(
            slab_number=slab.slab_number,
            units_billed_in_slab=billed_here,
            rate=slab.rate_per_unit,
            amount=round_currency(amount),
        ))
        energy_charges += amount
        remaining -= billed_here

    # Round once per value, from the unrounded energy total
    taxes = round_currency(energy_charges * tax_rate)
    total_bill = round_currency(energy_charges) + taxes

    logger.debug(
        f"Bill for {total_units} units: {len(charges)} slabs, "
        f"energy={energy_charges:.2f}, taxes={taxes}, total={total_bill}"
    )

    return BillResult(
        slab_breakdown=tuple(charges),
        energy_charges=round_currency(energy_charges),
        taxes=taxes,
        total_bill=total_bill,
    )
