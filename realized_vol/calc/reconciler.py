"""Merge multi-source observations into one contiguous price series."""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal, localcontext
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.observation import PriceObservation, Source
from ..models.results import ReconciledPoint
from ..sources.base import Granularity
from .errors import InvalidInputError, ReconciliationError, ReconciliationReason

logger = logging.getLogger(__name__)

DECIMAL_PRECISION = 50


def _mean(values: Sequence[Decimal]) -> Decimal:
    return sum(values, Decimal(0)) / len(values)


def collapse_by_source(
    observations: Iterable[PriceObservation],
) -> List[Tuple[Optional[Decimal], Optional[Decimal]]]:
    """Reduce one bucket's observations to one (average, vwap) pair per source.

    Several observations from the same source in the same bucket are
    averaged field by field, so a source that reports at sub-bucket
    resolution carries the same weight as one that reports once.
    """
    per_source: Dict[Source, Tuple[List[Decimal], List[Decimal]]] = defaultdict(
        lambda: ([], [])
    )
    for obs in observations:
        averages, vwaps = per_source[obs.source]
        if obs.average_price is not None:
            averages.append(obs.average_price)
        if obs.volume_weighted_price is not None:
            vwaps.append(obs.volume_weighted_price)

    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return [
            (_mean(averages) if averages else None, _mean(vwaps) if vwaps else None)
            for averages, vwaps in per_source.values()
        ]


def select_bucket_price(
    average_prices: Sequence[Decimal], vwap_prices: Sequence[Decimal]
) -> Decimal:
    """Pick the conservative price for a bucket.

    The bucket average and bucket VWAP are each the mean over the sources
    that report that field. When both exist the lower one wins; otherwise
    the one that exists is used.

    Raises:
        InvalidInputError: If neither sequence has a value
    """
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        candidates = [_mean(values) for values in (average_prices, vwap_prices) if values]
    if not candidates:
        raise InvalidInputError("A bucket needs at least one average or VWAP price")
    return min(candidates)


def interpolate_gaps(anchors: Dict[int, Decimal], size: int) -> List[Tuple[Decimal, bool]]:
    """Fill a series of `size` slots from the anchor prices at known indexes.

    Slots between two anchors are linearly interpolated. Slots before the
    first anchor or after the last one take that anchor's price.

    Returns:
        List of (price, interpolated) tuples, one per slot

    Raises:
        InvalidInputError: If fewer than 2 anchors are given
    """
    if len(anchors) < 2:
        raise InvalidInputError(f"Interpolation needs at least 2 anchors, got {len(anchors)}")

    indexes = sorted(anchors)
    filled: List[Tuple[Decimal, bool]] = []
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        for i in range(size):
            if i in anchors:
                filled.append((anchors[i], False))
                continue

            before = max((j for j in indexes if j < i), default=None)
            after = min((j for j in indexes if j > i), default=None)
            if before is None:
                price = anchors[after]
            elif after is None:
                price = anchors[before]
            else:
                p_before, p_after = anchors[before], anchors[after]
                price = p_before + (p_after - p_before) * (i - before) / (after - before)
            filled.append((price, True))
    return filled


def reconcile(
    observations: Iterable[PriceObservation],
    granularity: Granularity,
    period_count: int,
    end: Optional[datetime] = None,
    min_sources_per_bucket: int = 1,
    common_end: bool = False,
) -> List[ReconciledPoint]:
    """Build exactly `period_count` contiguous points at `granularity`.

    Args:
        observations: Observations from any number of sources
        granularity: Bucket width
        period_count: Number of points wanted (N)
        end: Last bucket of the window. Defaults to the latest bucket any
            source reported, which may be a still-forming bar seen by one
            source only
        min_sources_per_bucket: Distinct sources a bucket needs to count as an
            anchor; thinner buckets are interpolated
        common_end: When end is not given, end the window at the latest
            bucket reported by every source instead

    Returns:
        List of ReconciledPoint, ascending, one granularity step apart

    Raises:
        InvalidInputError: If period_count is below 2
        ReconciliationError: If the window holds fewer than 2 anchor buckets
    """
    if period_count < 2:
        raise InvalidInputError(f"period_count must be >= 2, got {period_count}")

    buckets: Dict[datetime, List[PriceObservation]] = defaultdict(list)
    for obs in observations:
        buckets[granularity.truncate(obs.timestamp)].append(obs)

    if not buckets:
        raise ReconciliationError(
            ReconciliationReason.INSUFFICIENT_DATA, "no observations from any source"
        )

    if end is not None:
        end = granularity.truncate(end)
    elif common_end:
        latest_by_source: Dict[Source, datetime] = {}
        for ts, bucket in buckets.items():
            for obs in bucket:
                latest_by_source[obs.source] = max(ts, latest_by_source.get(obs.source, ts))
        end = min(latest_by_source.values())
    else:
        end = max(buckets)
    step = granularity.step
    start = end - step * (period_count - 1)
    timestamps = [start + step * i for i in range(period_count)]

    anchors: Dict[int, Decimal] = {}
    for i, ts in enumerate(timestamps):
        bucket = buckets.get(ts)
        if not bucket:
            continue
        if len({obs.source for obs in bucket}) < min_sources_per_bucket:
            logger.debug(f"Bucket {ts} below source quorum, interpolating")
            continue
        per_source = collapse_by_source(bucket)
        anchors[i] = select_bucket_price(
            [avg for avg, _ in per_source if avg is not None],
            [vwap for _, vwap in per_source if vwap is not None],
        )

    if len(anchors) < 2:
        raise ReconciliationError(
            ReconciliationReason.INSUFFICIENT_DATA,
            f"window {start.isoformat()} .. {end.isoformat()} ({period_count} "
            f"{granularity.value} buckets) has {len(anchors)} anchor bucket(s), need 2",
        )

    points = [
        ReconciledPoint(timestamp=ts, price=price, interpolated=interpolated)
        for ts, (price, interpolated) in zip(timestamps, interpolate_gaps(anchors, period_count))
    ]
    logger.info(
        f"Reconciled {period_count} {granularity.value} buckets ending {end.isoformat()}: "
        f"{len(anchors)} anchors, {period_count - len(anchors)} interpolated"
    )
    return points
