"""Configuration management."""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional

from .sources.base import Granularity, parse_granularity
from .sources.polygon import DEFAULT_POLYGON_API_URL

DUNE_QUERY_ID_VARS = {
    Granularity.SECOND: "DUNE_QUERY_ID_SEC",
    Granularity.MINUTE: "DUNE_QUERY_ID_MIN",
    Granularity.HOUR: "DUNE_QUERY_ID_HOUR",
    Granularity.DAY: "DUNE_QUERY_ID_DAY",
}


def _int_env(name: str, default: Optional[str] = None) -> int:
    raw = os.getenv(name, default)
    if raw is None or raw.strip() == "":
        raise ValueError(f"{name} is required")
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a valid integer, got {raw!r}")


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _load_cdp_key_file(cdp_key_file: str) -> tuple:
    """Read (api_key, api_secret) from a Coinbase CDP API key JSON file."""
    if not Path(cdp_key_file).exists():
        raise ValueError(
            f"CDP API key file not found: {cdp_key_file}\n"
            f"  - Verify the file path is correct\n"
            f"  - Or set COINBASE_API_KEY and COINBASE_API_SECRET instead"
        )

    try:
        with open(cdp_key_file) as f:
            cdp_data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in CDP API key file {cdp_key_file}: {e}") from e

    api_key_name = cdp_data.get("name", "")
    api_secret = cdp_data.get("privateKey", "")
    if not api_key_name or not api_secret:
        raise ValueError(
            f"CDP API key file {cdp_key_file} must contain 'name' and 'privateKey' fields"
        )

    # Format: organizations/.../apiKeys/{key_id}
    use_full_name = os.getenv("COINBASE_USE_FULL_API_KEY_NAME", "false").lower() == "true"
    if "/apiKeys/" in api_key_name and not use_full_name:
        api_key_name = api_key_name.split("/apiKeys/")[-1]
    return api_key_name, api_secret


@dataclass
class SystemConfig:
    """System configuration from environment variables.

    Read once at startup; every field is immutable for the rest of the run.
    """

    number_of_periods: int
    granularity: Granularity
    coinbase_api_key: str
    coinbase_api_secret: str
    dune_api_key: str
    polygon_api_key: str
    dune_query_ids: Dict[Granularity, str] = field(default_factory=dict)
    kraken_pair: str = "ETHUSD"
    coinbase_product_id: str = "ETH-USD"
    dune_max_price: Optional[Decimal] = Decimal("8000")
    polygon_api_url: str = DEFAULT_POLYGON_API_URL
    request_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 30.0
    fetch_retries: int = 0
    fetch_retry_backoff_seconds: float = 1.0
    min_sources: int = 1
    min_sources_per_bucket: int = 1
    window_end: str = "latest"

    @classmethod
    def from_env(cls) -> "SystemConfig":
        """Load configuration from environment variables.

        Raises:
            ValueError: If a required variable is missing or malformed
        """
        granularity = parse_granularity(os.getenv("GRANULARITY", "hour"))

        coinbase_api_key = os.getenv("COINBASE_API_KEY", "")
        coinbase_api_secret = os.getenv("COINBASE_API_SECRET", "")
        cdp_key_file = os.getenv("COINBASE_CDP_KEY_FILE", "")
        if cdp_key_file:
            coinbase_api_key, coinbase_api_secret = _load_cdp_key_file(cdp_key_file)

        dune_query_ids = {
            g: os.environ[var].strip()
            for g, var in DUNE_QUERY_ID_VARS.items()
            if os.getenv(var, "").strip()
        }

        raw_max_price = os.getenv("DUNE_MAX_PRICE", "8000").strip()
        if raw_max_price.lower() in ("", "none", "off"):
            dune_max_price = None
        else:
            try:
                dune_max_price = Decimal(raw_max_price)
            except InvalidOperation:
                raise ValueError(f"DUNE_MAX_PRICE must be a number, got {raw_max_price!r}")

        return cls(
            number_of_periods=_int_env("NUMBER_OF_PERIODS"),
            granularity=granularity,
            coinbase_api_key=coinbase_api_key,
            coinbase_api_secret=coinbase_api_secret,
            dune_api_key=os.getenv("DUNE_API_KEY", ""),
            polygon_api_key=os.getenv("POLYGON_API_KEY", ""),
            dune_query_ids=dune_query_ids,
            kraken_pair=os.getenv("KRAKEN_PAIR", "ETHUSD"),
            coinbase_product_id=os.getenv("COINBASE_PRODUCT_ID", "ETH-USD"),
            dune_max_price=dune_max_price,
            polygon_api_url=os.getenv("POLYGON_API_URL", DEFAULT_POLYGON_API_URL),
            request_timeout_seconds=_float_env("REQUEST_TIMEOUT_SECONDS", "10"),
            fetch_timeout_seconds=_float_env("FETCH_TIMEOUT_SECONDS", "30"),
            fetch_retries=_int_env("FETCH_RETRIES", "0"),
            fetch_retry_backoff_seconds=_float_env("FETCH_RETRY_BACKOFF_SECONDS", "1.0"),
            min_sources=_int_env("MIN_SOURCES", "1"),
            min_sources_per_bucket=_int_env("MIN_SOURCES_PER_BUCKET", "1"),
            window_end=os.getenv("WINDOW_END", "latest").strip().lower(),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if self.number_of_periods < 2:
            raise ValueError("NUMBER_OF_PERIODS must be >= 2 (one return needs two prices)")
        if not self.coinbase_api_key or not self.coinbase_api_secret:
            raise ValueError(
                "COINBASE_API_KEY and COINBASE_API_SECRET (or COINBASE_CDP_KEY_FILE) are required"
            )
        if not self.dune_api_key:
            raise ValueError("DUNE_API_KEY is required")
        if self.granularity not in self.dune_query_ids:
            raise ValueError(
                f"{DUNE_QUERY_ID_VARS[self.granularity]} is required for "
                f"granularity '{self.granularity.value}'"
            )
        if not self.polygon_api_key:
            raise ValueError("POLYGON_API_KEY is required")
        if self.fetch_timeout_seconds <= 0 or self.request_timeout_seconds <= 0:
            raise ValueError("FETCH_TIMEOUT_SECONDS and REQUEST_TIMEOUT_SECONDS must be > 0")
        if self.fetch_retries < 0:
            raise ValueError("FETCH_RETRIES must be >= 0")
        if not 1 <= self.min_sources <= 4:
            raise ValueError("MIN_SOURCES must be between 1 and 4")
        if not 1 <= self.min_sources_per_bucket <= 4:
            raise ValueError("MIN_SOURCES_PER_BUCKET must be between 1 and 4")
        if self.window_end not in ("latest", "common"):
            raise ValueError("WINDOW_END must be 'latest' or 'common'")
