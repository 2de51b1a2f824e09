"""Shared test fixtures and utilities."""

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
import requests

from realized_vol.models.observation import PriceObservation, Source
from realized_vol.sources.base import FetchError, Granularity, PriceSource

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class MockCandleData:
    """Mock candle data object that mimics Coinbase SDK response."""

    def __init__(self, start, open_price, high, low, close, volume):
        """Initialize mock candle data.

        Args:
            start: Start timestamp (datetime or unix seconds string)
            open_price: Open price
            high: High price
            low: Low price
            close: Close price
            volume: Volume
        """
        self.start = start
        self.open = str(open_price)
        self.high = str(high)
        self.low = str(low)
        self.close = str(close)
        self.volume = str(volume)


class MockCandlesResponse:
    """Mock response object that mimics Coinbase get_candles response."""

    def __init__(self, candles_data: List[MockCandleData]):
        self.candles = candles_data


class FakePriceSource(PriceSource):
    """In-memory source returning frozen observations or raising an error."""

    def __init__(
        self,
        source: Source,
        observations: Optional[List[PriceObservation]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        granularities=frozenset(Granularity),
    ):
        super().__init__()
        self.source = source
        self.observations = observations or []
        self.error = error
        self.delay = delay
        self.supported_granularities = frozenset(granularities)
        self.calls = 0
        self.finished = threading.Event()
        self.saw_cancel = False

    def _fetch(self, granularity, period_count, cancelled=None) -> List[PriceObservation]:
        self.calls += 1
        try:
            if self.delay:
                if cancelled is None:
                    time.sleep(self.delay)
                elif cancelled.wait(self.delay):
                    self.saw_cancel = True
                    self._raise_if_cancelled(cancelled)
            if self.error is not None:
                raise self.error
            return list(self.observations)
        finally:
            self.finished.set()


class FlakyPriceSource(FakePriceSource):
    """Raises the given FetchError for the first `failures` calls."""

    def __init__(self, source: Source, observations, error: FetchError, failures: int):
        super().__init__(source, observations)
        self.flaky_error = error
        self.failures = failures

    def _fetch(self, granularity, period_count, cancelled=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.flaky_error
        return list(self.observations)


def make_observation(
    offset: int,
    average: Optional[str] = None,
    vwap: Optional[str] = None,
    source: Source = Source.EXCHANGE_A,
    granularity: Granularity = Granularity.HOUR,
    base_time: datetime = BASE_TIME,
) -> PriceObservation:
    """Helper to build an observation `offset` buckets after base_time."""
    return PriceObservation(
        timestamp=base_time + granularity.step * offset,
        average_price=Decimal(average) if average is not None else None,
        volume_weighted_price=Decimal(vwap) if vwap is not None else None,
        source=source,
    )


def make_series(
    prices: List[str], source: Source = Source.EXCHANGE_A, granularity=Granularity.HOUR
) -> List[PriceObservation]:
    """Helper to build consecutive average-only observations."""
    return [
        make_observation(i, average=p, source=source, granularity=granularity)
        for i, p in enumerate(prices)
    ]


def mock_json_response(payload, status_code: int = 200) -> MagicMock:
    """Helper to create a mock requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        error = requests.exceptions.HTTPError(f"{status_code} Error")
        error.response = response
        response.raise_for_status.side_effect = error
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def mock_rest_client():
    """Create a mock Coinbase RESTClient."""
    return MagicMock()


@pytest.fixture
def sample_candle_data():
    """Create sample candle data for testing."""
    return [
        MockCandleData(
            start=str(int(BASE_TIME.timestamp())),
            open_price="3000.00",
            high="3010.00",
            low="2990.00",
            close="3004.00",
            volume="12.5",
        ),
        MockCandleData(
            start=str(int((BASE_TIME + timedelta(hours=1)).timestamp())),
            open_price="3004.00",
            high="3020.00",
            low="3000.00",
            close="3016.00",
            volume="8.0",
        ),
    ]


@pytest.fixture
def sample_candles_response(sample_candle_data):
    """Create a mock candles response."""
    return MockCandlesResponse(sample_candle_data)
