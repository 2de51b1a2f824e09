"""Period returns from a reconciled price series."""

import logging
from decimal import localcontext
from typing import List, Sequence

from ..models.results import PeriodReturn, ReconciledPoint
from .errors import InvalidInputError, NonPositivePriceError
from .reconciler import DECIMAL_PRECISION

logger = logging.getLogger(__name__)


def compute_returns(points: Sequence[ReconciledPoint]) -> List[PeriodReturn]:
    """Turn N prices into N-1 simple returns (x_i - x_{i-1}) / x_{i-1}.

    Raises:
        InvalidInputError: If fewer than 2 points are given
        NonPositivePriceError: If any price is zero or negative
    """
    if len(points) < 2:
        raise InvalidInputError(f"Need at least 2 points to compute a return, got {len(points)}")

    for point in points:
        if point.price <= 0:
            raise NonPositivePriceError(point.timestamp, point.price)

    returns = []
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        for previous, current in zip(points, points[1:]):
            value = (current.price - previous.price) / previous.price
            logger.debug(f"Price {current.price} Previous {previous.price} Return {value}")
            returns.append(PeriodReturn(timestamp=current.timestamp, value=value))
    return returns
