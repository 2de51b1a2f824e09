"""Dune Analytics on-chain price source.

Each granularity has its own saved Dune query that averages the
USDC/WETH trade ratio of a DEX per truncated time bucket, newest first.
See queries/eth_usdc_uniswap.sql for the query text.
"""

import logging
import threading
from decimal import Decimal
from typing import Dict, List, Optional

from dateutil import parser

from ..models.observation import PriceObservation, Source
from .base import Granularity, PriceSource, parse_decimal

logger = logging.getLogger(__name__)

DEFAULT_MAX_PRICE = Decimal("8000")


class DunePriceSource(PriceSource):
    """Dune saved-query results, reported as average price only."""

    source = Source.ON_CHAIN

    def __init__(
        self,
        api_key: str,
        query_ids: Dict[Granularity, str],
        base_url: str = "https://api.dune.com/api/v1",
        max_price: Optional[Decimal] = DEFAULT_MAX_PRICE,
        time_column: str = "tspan",
        price_column: str = "average_eth_price",
        request_timeout: float = 10.0,
    ):
        """Initialize Dune price source.

        Args:
            api_key: Dune API key
            query_ids: Saved query id per granularity
            base_url: Base URL of the Dune API
            max_price: Rows priced above this are dropped as bad trades
                (None disables the ceiling)
            time_column: Result column holding the bucket timestamp
            price_column: Result column holding the average price
            request_timeout: Per-request HTTP timeout in seconds
        """
        super().__init__(request_timeout)
        if not api_key:
            raise ValueError("API key is required for Dune")
        self.api_key = api_key
        self.query_ids = dict(query_ids)
        self.base_url = base_url.rstrip("/")
        self.max_price = max_price
        self.time_column = time_column
        self.price_column = price_column

    @property
    def supported_granularities(self):
        return frozenset(self.query_ids)

    def _fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        query_id = self.query_ids[granularity]
        payload = self._get_json(
            f"{self.base_url}/query/{query_id}/results",
            params={"limit": period_count},
            headers={"X-Dune-API-Key": self.api_key},
        )

        try:
            rows = payload["result"]["rows"]
        except (KeyError, TypeError) as e:
            raise self._malformed(f"query {query_id}: missing result rows") from e
        if not isinstance(rows, list):
            raise self._malformed(f"query {query_id}: rows is not a list")

        observations = []
        dropped = 0
        for row in rows:
            obs = self._parse_row(granularity, row)
            if obs is None:
                dropped += 1
            else:
                observations.append(obs)

        if dropped:
            logger.warning(f"Dropped {dropped} unusable rows from Dune query {query_id}")
        return observations

    def _parse_row(self, granularity: Granularity, row: dict) -> Optional[PriceObservation]:
        """Parse one result row, or None if its price is unusable."""
        try:
            raw_time = row[self.time_column]
            raw_price = row[self.price_column]
        except (KeyError, TypeError) as e:
            raise self._malformed(f"row {row!r} is missing {e}") from e

        try:
            timestamp = parser.parse(str(raw_time))
        except (ValueError, OverflowError) as e:
            raise self._malformed(f"unparseable timestamp {raw_time!r}") from e

        # Data cleansing: "Infinity"/"NaN" come from zero-amount trades
        try:
            price = parse_decimal(raw_price)
        except ValueError:
            logger.debug(f"Skipping non-finite price {raw_price!r} at {raw_time}")
            return None
        if price <= 0 or (self.max_price is not None and price > self.max_price):
            logger.debug(f"Skipping out-of-range price {price} at {raw_time}")
            return None

        return PriceObservation(
            timestamp=granularity.truncate(timestamp),
            average_price=price,
            source=self.source,
        )
