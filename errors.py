# errors.py
"""
Exceptions raised by the billing engine
"""


class BillingError(ValueError):
    """Base class for billing engine errors"""


class ValidationError(BillingError):
    """Slab table is malformed (gaps, bad rates, misplaced unbounded slab...)"""


class InvalidArgumentError(BillingError):
    """Unit figure passed to a calculation is negative or not a number"""


class OutOfRangeError(BillingError):
    """Unit figure cannot be mapped onto any slab"""
