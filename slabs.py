# slabs.py
"""
Progressive rate slabs: definition, validation and range lookup
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from errors import InvalidArgumentError, OutOfRangeError, ValidationError

logger = logging.getLogger(__name__)

# Accepted spellings for each field of a raw slab mapping
_FIELD_ALIASES = {
    "slab_number": ("slab_number", "slabNumber"),
    "min_units": ("min_units", "minUnits"),
    "max_units": ("max_units", "maxUnits"),
    "rate_per_unit": ("rate_per_unit", "ratePerUnit", "ratePerKwh"),
}


def to_units(value, error_cls=OutOfRangeError) -> float:
    """
    Coerce a unit figure to float.

    Non-numbers, NaN and infinity raise InvalidArgumentError; negative
    figures raise `error_cls`.
    """
    if isinstance(value, (bool, str, bytes)):
        raise InvalidArgumentError(f"Units must be a number, got {value!r}")
    try:
        units = float(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"Units must be a number, got {value!r}") from None
    if not math.isfinite(units):
        raise InvalidArgumentError(f"Units must be finite, got {value!r}")
    if units < 0:
        raise error_cls(f"Units must be non-negative, got {value!r}")
    return units


@dataclass(frozen=True)
class SlabDefinition:
    slab_number: int
    min_units: int
    max_units: Optional[int]  # None = unbounded
    rate_per_unit: float

    @property
    def is_unbounded(self) -> bool:
        return self.max_units is None

    def capacity(self) -> Optional[int]:
        """Number of whole units the slab can hold, None if unbounded"""
        if self.max_units is None:
            return None
        return self.max_units - self.min_units + 1

    def to_dict(self) -> dict:
        return {
            "slabNumber": self.slab_number,
            "minUnits": self.min_units,
            "maxUnits": self.max_units,
            "ratePerUnit": self.rate_per_unit,
        }


class SlabTable:
    """
    Immutable, ordered table of rate slabs.

    Build it with load_slab_table(); the constructor assumes the slabs are
    already validated.
    """

    def __init__(self, slabs: Tuple[SlabDefinition, ...]):
        self._slabs = tuple(slabs)

    def __len__(self):
        return len(self._slabs)

    def __iter__(self):
        return iter(self._slabs)

    def __repr__(self):
        return f"SlabTable({len(self._slabs)} slabs)"

    def slabs(self) -> Tuple[SlabDefinition, ...]:
        return self._slabs

    @property
    def last(self) -> SlabDefinition:
        return self._slabs[-1]

    def slab_containing(self, units: float) -> SlabDefinition:
        """
        Slab that `units` falls into.

        Returns the first slab whose upper bound is not exceeded, so units
        below the first slab's minimum and fractional units falling between
        two integer ranges both resolve to the lower of the candidate slabs.
        Anything above every bounded slab lands in the unbounded one.

        Raises OutOfRangeError for negative units and InvalidArgumentError
        for anything that is not a finite number.
        """
        units = to_units(units, OutOfRangeError)

        for slab in self._slabs:
            if slab.max_units is None or units <= slab.max_units:
                return slab
        # load_slab_table guarantees an unbounded last slab
        return self._slabs[-1]

    def next_slab(self, slab: SlabDefinition) -> Optional[SlabDefinition]:
        for candidate in self._slabs:
            if candidate.slab_number == slab.slab_number + 1:
                return candidate
        return None

    def to_list(self) -> list:
        return [slab.to_dict() for slab in self._slabs]


def _field(raw, name, index):
    for key in _FIELD_ALIASES[name]:
        if key in raw:
            return raw[key]
    raise ValidationError(f"Slab #{index}: missing field '{name}'")


def _is_int(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def _to_definition(raw, index: int) -> SlabDefinition:
    if isinstance(raw, SlabDefinition):
        slab_number, min_units, max_units, rate = (
            raw.slab_number, raw.min_units, raw.max_units, raw.rate_per_unit
        )
    else:
        try:
            slab_number = _field(raw, "slab_number", index)
            min_units = _field(raw, "min_units", index)
            max_units = _field(raw, "max_units", index) if any(
                key in raw for key in _FIELD_ALIASES["max_units"]
            ) else None
            rate = _field(raw, "rate_per_unit", index)
        except TypeError:
            raise ValidationError(f"Slab #{index}: expected a mapping, got {type(raw).__name__}") from None

    if not _is_int(slab_number) or slab_number <= 0:
        raise ValidationError(f"Slab #{index}: slab number must be a positive integer, got {slab_number!r}")
    if not _is_int(min_units) or min_units < 0:
        raise ValidationError(f"Slab {slab_number}: min units must be a non-negative integer, got {min_units!r}")
    if max_units is not None and not _is_int(max_units):
        raise ValidationError(f"Slab {slab_number}: max units must be an integer or None, got {max_units!r}")
    try:
        if isinstance(rate, (bool, str, bytes)):
            raise TypeError
        rate = float(rate)
    except (TypeError, ValueError):
        raise ValidationError(f"Slab {slab_number}: rate must be a positive number, got {rate!r}") from None
    if not math.isfinite(rate) or rate <= 0:
        raise ValidationError(f"Slab {slab_number}: rate must be a positive number, got {rate!r}")

    max_units = int(max_units) if max_units is not None else None
    if max_units is not None and max_units < min_units:
        raise ValidationError(f"Slab {slab_number}: max units {max_units} < min units {min_units}")

    return SlabDefinition(
        slab_number=int(slab_number),
        min_units=int(min_units),
        max_units=max_units,
        rate_per_unit=float(rate),
    )


def load_slab_table(raw_slabs: Iterable) -> SlabTable:
    """
    Validate raw slab definitions and build an immutable SlabTable.

    Args:
        raw_slabs: mappings (snake_case or camelCase keys) or SlabDefinition
            objects, in ascending slab order

    Returns:
        SlabTable

    Raises:
        ValidationError: the table is empty, a slab is malformed, numbering is
            not consecutive, ranges leave a gap or overlap, or the unbounded
            slab is missing, duplicated or not last
    """
    if raw_slabs is None:
        raise ValidationError("Slab table is empty")

    slabs = [_to_definition(raw, i) for i, raw in enumerate(raw_slabs, start=1)]
    if not slabs:
        raise ValidationError("Slab table is empty")

    unbounded = [s for s in slabs if s.is_unbounded]
    if len(unbounded) > 1:
        raise ValidationError(
            f"Only one unbounded slab allowed, found {len(unbounded)}: "
            f"{[s.slab_number for s in unbounded]}"
        )
    if not unbounded:
        raise ValidationError("Last slab must be unbounded (max units = None)")
    if not slabs[-1].is_unbounded:
        raise ValidationError(f"Unbounded slab {unbounded[0].slab_number} must be the last slab")

    for prev, cur in zip(slabs, slabs[1:]):
        if cur.slab_number != prev.slab_number + 1:
            raise ValidationError(
                f"Slab numbers must increase by one: {prev.slab_number} followed by {cur.slab_number}"
            )
        if cur.min_units != prev.max_units + 1:
            raise ValidationError(
                f"Slab {cur.slab_number} starts at {cur.min_units}, "
                f"expected {prev.max_units + 1} (slab {prev.slab_number} ends at {prev.max_units})"
            )

    table = SlabTable(tuple(slabs))
    logger.info(f"Loaded slab table: {len(table)} slabs, top rate {table.last.rate_per_unit}")
    return table
