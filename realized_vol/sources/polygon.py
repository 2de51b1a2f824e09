"""Polygon.io aggregates price source (aggregator)."""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from ..models.observation import PriceObservation, Source
from .base import Granularity, PriceSource, ohlc_average, parse_decimal

logger = logging.getLogger(__name__)

DEFAULT_POLYGON_API_URL = "https://api.polygon.io/v2/aggs/ticker/X:ETHUSD/range"


class PolygonPriceSource(PriceSource):
    """Polygon aggregate bars: OHLC average plus the `vw` VWAP."""

    source = Source.AGGREGATOR

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_POLYGON_API_URL,
        request_timeout: float = 10.0,
    ):
        """Initialize Polygon price source.

        Args:
            api_key: Polygon API key
            api_url: Aggregates range URL up to (not including) the multiplier
            request_timeout: Per-request HTTP timeout in seconds
        """
        super().__init__(request_timeout)
        if not api_key:
            raise ValueError("API key is required for Polygon")
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")

    def _fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        end_time = granularity.truncate(datetime.now(timezone.utc)) + granularity.step
        start_time = end_time - granularity.step * period_count

        # Millisecond bounds so second and minute windows are not widened to whole days
        url = (
            f"{self.api_url}/1/{granularity.value}/"
            f"{int(start_time.timestamp() * 1000)}/{int(end_time.timestamp() * 1000)}"
        )
        logger.debug(f"Polygon URL: {url}")
        payload = self._get_json(
            url,
            params={"adjusted": "true", "sort": "asc", "limit": 50000, "apiKey": self.api_key},
        )
        if not isinstance(payload, dict):
            raise self._malformed("expected a JSON object")

        results = payload.get("results")
        if results is None:
            logger.warning(f"No results returned by Polygon (status={payload.get('status')})")
            return []
        if not isinstance(results, list):
            raise self._malformed("'results' is not a list")

        return self._parse_results(granularity, results)

    def _parse_results(self, granularity: Granularity, results: list) -> List[PriceObservation]:
        """Parse {t, o, h, l, c, vw} bars."""
        observations = []
        for bar in results:
            try:
                timestamp = datetime.fromtimestamp(int(bar["t"]) / 1000, tz=timezone.utc)
                average = None
                if all(bar.get(k) is not None for k in ("o", "h", "l", "c")):
                    average = ohlc_average(bar["o"], bar["h"], bar["l"], bar["c"])
                vwap = parse_decimal(bar["vw"]) if bar.get("vw") is not None else None
                observations.append(
                    PriceObservation(
                        timestamp=granularity.truncate(timestamp),
                        average_price=average,
                        volume_weighted_price=vwap,
                        source=self.source,
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise self._malformed(f"bad aggregate bar {bar!r}: {e}") from e
        return observations
