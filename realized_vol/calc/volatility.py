"""Sample mean and standard deviation of period returns."""

from decimal import Decimal, localcontext
from typing import Sequence

from ..models.results import PeriodReturn, VolatilityResult
from .errors import InvalidInputError
from .reconciler import DECIMAL_PRECISION


def compute_volatility(returns: Sequence[PeriodReturn]) -> VolatilityResult:
    """Compute the sample standard deviation of the returns.

    Variance uses Bessel's correction (divides by M-1), so M must be at
    least 2. Everything runs in Decimal at DECIMAL_PRECISION digits.

    Raises:
        InvalidInputError: If fewer than 2 returns are given
    """
    m = len(returns)
    if m < 2:
        raise InvalidInputError(f"Sample variance needs at least 2 returns, got {m}")

    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        values = [r.value for r in returns]
        mean = sum(values, Decimal(0)) / m
        variance = sum(((v - mean) ** 2 for v in values), Decimal(0)) / (m - 1)
        std_dev = variance.sqrt()

    return VolatilityResult(sample_size=m, mean_return=mean, std_dev=std_dev)
