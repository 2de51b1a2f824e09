"""Base classes for price source adapters."""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, FrozenSet, List, Optional

import requests

from ..calc.errors import InvalidInputError
from ..models.observation import PriceObservation, Source

logger = logging.getLogger(__name__)


class Granularity(str, Enum):
    """Bucket width of the reconciled series."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def step(self) -> timedelta:
        """Width of one bucket."""
        return {
            "second": timedelta(seconds=1),
            "minute": timedelta(minutes=1),
            "hour": timedelta(hours=1),
            "day": timedelta(days=1),
        }[self.value]

    def truncate(self, timestamp: datetime) -> datetime:
        """Truncate a timestamp to the start of its bucket.

        Naive timestamps are read as UTC; aware ones are converted to UTC.
        """
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        else:
            timestamp = timestamp.astimezone(timezone.utc)

        timestamp = timestamp.replace(microsecond=0)
        if self is Granularity.SECOND:
            return timestamp
        if self is Granularity.MINUTE:
            return timestamp.replace(second=0)
        if self is Granularity.HOUR:
            return timestamp.replace(minute=0, second=0)
        return timestamp.replace(hour=0, minute=0, second=0)


def parse_granularity(value: str) -> Granularity:
    """Parse granularity string to Granularity enum.

    Accepts the enum values ("hour") and the short forms used by most
    exchange APIs ("1h").

    Raises:
        ValueError: If the string is not a supported granularity
    """
    value = value.strip().lower()
    aliases = {"1s": "second", "1m": "minute", "1h": "hour", "1d": "day"}
    try:
        return Granularity(aliases.get(value, value))
    except ValueError:
        raise ValueError(f"Unsupported granularity: {value}")


class FetchErrorKind(str, Enum):
    """Why a source could not deliver observations."""

    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    UNREACHABLE = "unreachable"


class FetchError(Exception):
    """Raised when a source adapter cannot fetch or normalize its data."""

    def __init__(self, source: Source, kind: FetchErrorKind, message: str):
        super().__init__(f"[{source.value}] {kind.value}: {message}")
        self.source = source
        self.kind = kind


def classify_request_error(error: Exception) -> FetchErrorKind:
    """Map a requests/HTTP exception to a FetchErrorKind."""
    if isinstance(error, requests.exceptions.Timeout):
        return FetchErrorKind.TIMEOUT
    if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        status = error.response.status_code
        if status in (401, 403):
            return FetchErrorKind.UNAUTHORIZED
        if status == 429:
            return FetchErrorKind.RATE_LIMITED
    if isinstance(error, ValueError):
        # requests' JSONDecodeError is a ValueError
        return FetchErrorKind.MALFORMED_RESPONSE
    return FetchErrorKind.UNREACHABLE


def parse_decimal(value: Any) -> Decimal:
    """Parse a provider number or numeric string into a Decimal.

    Floats go through their string form so 0.1 stays 0.1.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a number: {value!r}")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return number


def ohlc_average(open_: Any, high: Any, low: Any, close: Any) -> Decimal:
    """Average of the open, high, low and close prices."""
    total = parse_decimal(open_) + parse_decimal(high) + parse_decimal(low) + parse_decimal(close)
    return total / 4


class PriceSource(ABC):
    """Base class for price source adapters.

    An adapter hides one provider's transport and payload shape and hands
    back normalized PriceObservation records.
    """

    source: Source
    supported_granularities: FrozenSet[Granularity] = frozenset(Granularity)

    def __init__(self, request_timeout: float = 10.0):
        """Initialize price source.

        Args:
            request_timeout: Per-request HTTP timeout in seconds
        """
        self.request_timeout = request_timeout

    def supports(self, granularity: Granularity) -> bool:
        return granularity in self.supported_granularities

    def fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        """Fetch up to period_count observations, ascending by timestamp.

        Args:
            granularity: Bucket width
            period_count: Number of periods wanted (at least 2)
            cancelled: Optional event; once set, no further provider
                request is started

        Returns:
            List of PriceObservation objects, oldest first

        Raises:
            InvalidInputError: If period_count is below 2 or the provider
                does not offer the granularity
            FetchError: If the provider cannot be queried, its payload
                cannot be normalized, or the fetch was cancelled
        """
        if period_count < 2:
            raise InvalidInputError(f"period_count must be >= 2, got {period_count}")
        if not self.supports(granularity):
            raise InvalidInputError(
                f"granularity '{granularity.value}' is not offered by {self.source.value}"
            )
        self._raise_if_cancelled(cancelled)

        logger.info(f"Fetching {period_count} {granularity.value} periods from {self.source.value}")
        observations = self._fetch(granularity, period_count, cancelled)
        observations.sort(key=lambda o: o.timestamp)
        observations = observations[-period_count:]
        logger.info(f"Fetched {len(observations)} observations from {self.source.value}")
        return observations

    @abstractmethod
    def _fetch(
        self,
        granularity: Granularity,
        period_count: int,
        cancelled: Optional[threading.Event] = None,
    ) -> List[PriceObservation]:
        """Provider-specific fetch and normalization.

        Adapters that issue several requests call _raise_if_cancelled
        between them.
        """
        pass

    def _raise_if_cancelled(self, cancelled: Optional[threading.Event]) -> None:
        if cancelled is not None and cancelled.is_set():
            logger.warning(f"{self.source.value} fetch cancelled")
            raise FetchError(self.source, FetchErrorKind.TIMEOUT, "fetch cancelled")

    def _get_json(
        self,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """GET a JSON document, mapping transport failures to FetchError."""
        try:
            response = requests.get(
                url, params=params, headers=headers, timeout=self.request_timeout
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            kind = classify_request_error(e)
            logger.error(f"{self.source.value} request failed ({kind.value}): {e}")
            raise FetchError(self.source, kind, str(e)) from e

    def _malformed(self, message: str) -> FetchError:
        logger.error(f"{self.source.value} returned a malformed payload: {message}")
        return FetchError(self.source, FetchErrorKind.MALFORMED_RESPONSE, message)
