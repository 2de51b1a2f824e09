"""Realized volatility job entry point.

Fetches prices from all configured sources, reconciles them into one
series and prints the sample standard deviation of period returns.
"""

import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from .config import SystemConfig
from .pipeline.volatility_job import PipelineError, VolatilityPipeline
from .sources.coinbase import CoinbasePriceSource
from .sources.dune import DunePriceSource
from .sources.kraken import KrakenPriceSource
from .sources.polygon import PolygonPriceSource

logger = logging.getLogger(__name__)


def resolve_log_level(name: str) -> int:
    """Map a LOG_LEVEL name to a logging level, INFO when unknown."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def build_pipeline(config: SystemConfig) -> VolatilityPipeline:
    """Create the four source adapters and the pipeline that drives them."""
    timeout = config.request_timeout_seconds
    sources = [
        KrakenPriceSource(pair=config.kraken_pair, request_timeout=timeout),
        CoinbasePriceSource(
            api_key=config.coinbase_api_key,
            api_secret=config.coinbase_api_secret,
            product_id=config.coinbase_product_id,
            request_timeout=timeout,
        ),
        DunePriceSource(
            api_key=config.dune_api_key,
            query_ids=config.dune_query_ids,
            max_price=config.dune_max_price,
            request_timeout=timeout,
        ),
        PolygonPriceSource(
            api_key=config.polygon_api_key,
            api_url=config.polygon_api_url,
            request_timeout=timeout,
        ),
    ]
    return VolatilityPipeline(
        sources,
        fetch_timeout=config.fetch_timeout_seconds,
        fetch_retries=config.fetch_retries,
        retry_backoff=config.fetch_retry_backoff_seconds,
        min_sources=config.min_sources,
        min_sources_per_bucket=config.min_sources_per_bucket,
        common_end=config.window_end == "common",
    )


def main() -> int:
    """Main entry point for a single volatility run."""
    # Load .env file if it exists
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    log_level_name = os.getenv("LOG_LEVEL", "INFO")
    known_level = isinstance(logging.getLevelName(log_level_name.strip().upper()), int)
    logging.basicConfig(
        level=resolve_log_level(log_level_name),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    logger.info("🚀 Starting realized volatility job...")
    if not known_level:
        logger.warning(f"⚠️  Unknown LOG_LEVEL '{log_level_name}', using INFO")

    try:
        config = SystemConfig.from_env()
        config.validate()
    except ValueError as e:
        logger.error(f"❌ CRITICAL: configuration invalid: {e}")
        return 1

    logger.info("✅ Configuration loaded")
    logger.info(f"   - Granularity: {config.granularity.value}")
    logger.info(f"   - Periods: {config.number_of_periods}")
    logger.info(f"   - Min sources: {config.min_sources}")

    try:
        pipeline = build_pipeline(config)
        result = pipeline.run(config.granularity, config.number_of_periods)
    except PipelineError as e:
        logger.error(f"❌ Job failed: {e}")
        for failure in e.failures:
            logger.error(f"   - {failure}")
        return 1
    except Exception as e:
        logger.error(f"❌ Job failed: {e}", exc_info=True)
        return 1

    vol = result.volatility
    for point in result.points:
        marker = " (interpolated)" if point.interpolated else ""
        logger.debug(f"   {point.timestamp.isoformat()} {point.price}{marker}")
    logger.info(
        f"✅ Completed in {result.execution_time_ms} ms: {len(result.points)} points, "
        f"{result.interpolated_count} interpolated, "
        f"sources {[s.value for s in result.sources_used]}"
    )
    print(
        f"Volatility of {result.period_count} {result.granularity.value} periods "
        f"({vol.sample_size} returns): mean return = {vol.mean_return:.8f}, "
        f"sample std dev = {vol.std_dev:.8f} "
        f"[sources: {', '.join(s.value for s in result.sources_used)}]"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
