"""Kraken public OHLC price source (exchange A)."""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from ..models.observation import PriceObservation, Source
from .base import (
    FetchError,
    FetchErrorKind,
    Granularity,
    PriceSource,
    ohlc_average,
    parse_decimal,
)

logger = logging.getLogger(__name__)


class KrakenPriceSource(PriceSource):
    """Kraken OHLC bars: OHLC average plus the bar's own VWAP."""

    source = Source.EXCHANGE_A
    supported_granularities = frozenset({Granularity.MINUTE, Granularity.HOUR, Granularity.DAY})

    def __init__(
        self,
        pair: str = "ETHUSD",
        base_url: str = "https://api.kraken.com",
        request_timeout: float = 10.0,
    ):
        """Initialize Kraken price source.

        Args:
            pair: Kraken asset pair (e.g. "ETHUSD")
            base_url: Base URL of the Kraken REST API
            request_timeout: Per-request HTTP timeout in seconds
        """
        super().__init__(request_timeout)
        self.pair = pair
        self.base_url = base_url.rstrip("/")

    def _normalize_granularity(self, granularity: Granularity) -> int:
        """Convert granularity to a Kraken interval in minutes."""
        mapping = {
            Granularity.MINUTE: 1,
            Granularity.HOUR: 60,
            Granularity.DAY: 1440,
        }
        return mapping[granularity]

    def _fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        payload = self._get_json(
            f"{self.base_url}/0/public/OHLC",
            params={"pair": self.pair, "interval": self._normalize_granularity(granularity)},
        )
        self._raise_for_api_error(payload)

        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            raise self._malformed("missing 'result' object")

        # The result is keyed by Kraken's canonical pair name (ETHUSD -> XETHZUSD)
        rows = next((v for k, v in result.items() if k != "last"), None)
        if not isinstance(rows, list):
            raise self._malformed(f"no OHLC rows for pair {self.pair}")

        return self._parse_rows(granularity, rows[-period_count:])

    def _raise_for_api_error(self, payload) -> None:
        """Kraken reports API errors in the body with HTTP 200."""
        errors = payload.get("error") if isinstance(payload, dict) else None
        if not errors:
            return

        message = "; ".join(str(e) for e in errors)
        if "Rate limit" in message or "Too many requests" in message:
            kind = FetchErrorKind.RATE_LIMITED
        elif "Invalid key" in message or "Permission denied" in message:
            kind = FetchErrorKind.UNAUTHORIZED
        else:
            kind = FetchErrorKind.MALFORMED_RESPONSE
        logger.error(f"Kraken API error for {self.pair}: {message}")
        raise FetchError(self.source, kind, message)

    def _parse_rows(self, granularity: Granularity, rows: list) -> List[PriceObservation]:
        """Parse [time, open, high, low, close, vwap, volume, count] rows."""
        observations = []
        for row in rows:
            if not isinstance(row, list) or len(row) < 6:
                raise self._malformed(f"short OHLC row: {row!r}")
            try:
                timestamp = datetime.fromtimestamp(int(row[0]), tz=timezone.utc)
                vwap = parse_decimal(row[5])
                observations.append(
                    PriceObservation(
                        timestamp=granularity.truncate(timestamp),
                        average_price=ohlc_average(row[1], row[2], row[3], row[4]),
                        # Kraken reports a zero VWAP for intervals without trades
                        volume_weighted_price=vwap if vwap > 0 else None,
                        source=self.source,
                    )
                )
            except (TypeError, ValueError) as e:
                raise self._malformed(f"bad OHLC row {row!r}: {e}") from e
        return observations
