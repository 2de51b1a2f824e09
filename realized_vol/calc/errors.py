"""Exceptions raised by the numerical core."""

from datetime import datetime
from decimal import Decimal
from enum import Enum


class InvalidInputError(ValueError):
    """Caller supplied too few points or returns for a statistic."""

    pass


class ReconciliationReason(str, Enum):
    """Why a price series could not be reconciled."""

    INSUFFICIENT_DATA = "insufficient_data"


class ReconciliationError(Exception):
    """Raised when observations cannot be turned into a contiguous series."""

    def __init__(self, reason: ReconciliationReason, message: str):
        super().__init__(f"{reason.value}: {message}")
        self.reason = reason


class NonPositivePriceError(ArithmeticError):
    """A reconciled price of zero or less reached the return calculator."""

    def __init__(self, timestamp: datetime, price: Decimal):
        super().__init__(f"Non-positive price {price} at {timestamp.isoformat()}")
        self.timestamp = timestamp
        self.price = price
