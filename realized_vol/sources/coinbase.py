"""Coinbase Advanced Trade price source (exchange B)."""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from coinbase.rest import RESTClient

from ..models.observation import PriceObservation, Source
from .base import (
    FetchError,
    Granularity,
    PriceSource,
    classify_request_error,
    ohlc_average,
)

logger = logging.getLogger(__name__)

MAX_CANDLES_PER_REQUEST = 300


class CoinbasePriceSource(PriceSource):
    """Coinbase Advanced Trade candles, reported as OHLC average only."""

    source = Source.EXCHANGE_B
    supported_granularities = frozenset({Granularity.MINUTE, Granularity.HOUR, Granularity.DAY})

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        product_id: str = "ETH-USD",
        request_timeout: float = 10.0,
        rest_client: Optional[RESTClient] = None,
    ):
        """Initialize Coinbase price source.

        Args:
            api_key: Coinbase API key
            api_secret: Coinbase API secret (private key in PEM format)
            product_id: Coinbase product, e.g. "ETH-USD"
            request_timeout: Per-request HTTP timeout in seconds
            rest_client: Optional REST client for testing
        """
        super().__init__(request_timeout)
        self.product_id = product_id.upper()

        if rest_client:
            self.rest_client = rest_client
            return

        if not api_key or not api_secret:
            raise ValueError("API key and secret are required for Coinbase Advanced Trade API")

        # Normalize PEM key
        if api_secret.startswith("-----BEGIN") and "\\n" in api_secret and "\n" not in api_secret:
            api_secret = api_secret.replace("\\n", "\n")
        api_secret = api_secret.rstrip("\n\r")

        if api_secret.startswith("-----BEGIN") and "-----END" not in api_secret:
            raise ValueError("Invalid PEM key: missing END marker")

        self.rest_client = RESTClient(
            api_key=api_key, api_secret=api_secret, timeout=int(request_timeout)
        )
        logger.info("RESTClient created successfully")

    def _normalize_granularity(self, granularity: Granularity) -> str:
        """Convert granularity to Coinbase format."""
        mapping = {
            Granularity.MINUTE: "ONE_MINUTE",
            Granularity.HOUR: "ONE_HOUR",
            Granularity.DAY: "ONE_DAY",
        }
        return mapping[granularity]

    def _fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        end_time = granularity.truncate(datetime.now(timezone.utc)) + granularity.step
        start_time = end_time - granularity.step * period_count
        coinbase_granularity = self._normalize_granularity(granularity)

        observations: List[PriceObservation] = []
        chunk_start = start_time
        chunk_count = 0
        while chunk_start < end_time:
            self._raise_if_cancelled(cancelled)
            chunk_count += 1
            chunk_end = min(chunk_start + granularity.step * MAX_CANDLES_PER_REQUEST, end_time)
            logger.debug(f"Chunk {chunk_count}: {chunk_start} to {chunk_end}")
            observations.extend(
                self._fetch_chunk(granularity, coinbase_granularity, chunk_start, chunk_end)
            )
            chunk_start = chunk_end
        return observations

    def _fetch_chunk(
        self,
        granularity: Granularity,
        coinbase_granularity: str,
        chunk_start: datetime,
        chunk_end: datetime,
    ) -> List[PriceObservation]:
        """Fetch a single chunk of candles."""
        try:
            response = self.rest_client.get_candles(
                product_id=self.product_id,
                start=int(chunk_start.timestamp()),
                end=int(chunk_end.timestamp()),
                granularity=coinbase_granularity,
            )
        except Exception as e:
            kind = classify_request_error(e)
            logger.error(f"Failed to fetch candles for {self.product_id}: {e}")
            raise FetchError(self.source, kind, f"Failed to fetch candles: {e}") from e

        if not response or not getattr(response, "candles", None):
            logger.warning(f"No candles returned for {self.product_id}")
            return []

        return self._parse_sdk_candles(granularity, response.candles)

    def _parse_sdk_candles(self, granularity: Granularity, candles_data) -> List[PriceObservation]:
        """Parse SDK candle data into PriceObservation objects."""
        observations = []
        try:
            for candle_data in candles_data:
                if isinstance(candle_data.start, datetime):
                    timestamp = candle_data.start
                else:
                    timestamp = datetime.fromtimestamp(int(candle_data.start), tz=timezone.utc)

                observations.append(
                    PriceObservation(
                        timestamp=granularity.truncate(timestamp),
                        average_price=ohlc_average(
                            candle_data.open, candle_data.high, candle_data.low, candle_data.close
                        ),
                        source=self.source,
                    )
                )
        except (AttributeError, TypeError, ValueError) as e:
            raise self._malformed(f"bad candle from {self.product_id}: {e}") from e
        return observations
