"""Volatility pipeline: fetch all sources, reconcile, compute statistics."""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from ..calc.errors import InvalidInputError, NonPositivePriceError, ReconciliationError
from ..calc.reconciler import reconcile
from ..calc.returns import compute_returns
from ..calc.volatility import compute_volatility
from ..models.observation import PriceObservation, Source
from ..models.results import PipelineResult
from ..sources.base import FetchError, FetchErrorKind, Granularity, PriceSource

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = frozenset(
    {FetchErrorKind.TIMEOUT, FetchErrorKind.RATE_LIMITED, FetchErrorKind.UNREACHABLE}
)


class PipelineError(Exception):
    """A pipeline run failed; `stage` names where."""

    def __init__(self, stage: str, message: str, failures: Optional[List[FetchError]] = None):
        super().__init__(f"{stage} stage failed: {message}")
        self.stage = stage
        self.failures = failures or []


class VolatilityPipeline:
    """Drives the source adapters in parallel, then the numerical core."""

    def __init__(
        self,
        sources: Sequence[PriceSource],
        fetch_timeout: float = 30.0,
        fetch_retries: int = 0,
        retry_backoff: float = 1.0,
        min_sources: int = 1,
        min_sources_per_bucket: int = 1,
        common_end: bool = False,
    ) -> None:
        """Initialize volatility pipeline.

        Args:
            sources: Source adapters, at most one per Source value
            fetch_timeout: Seconds allowed for all sources together
            fetch_retries: Extra attempts per source for transient FetchErrors
            retry_backoff: Base delay in seconds, doubled on each retry
            min_sources: Sources that must return data for the run to proceed
            min_sources_per_bucket: Distinct sources a bucket needs to be an anchor
            common_end: End the window at the latest bucket every source reported
        """
        self.sources = list(sources)
        self.fetch_timeout = fetch_timeout
        self.fetch_retries = fetch_retries
        self.retry_backoff = retry_backoff
        self.min_sources = min_sources
        self.min_sources_per_bucket = min_sources_per_bucket
        self.common_end = common_end

    async def _fetch_with_retry(
        self,
        loop: asyncio.AbstractEventLoop,
        executor: ThreadPoolExecutor,
        source: PriceSource,
        granularity: Granularity,
        period_count: int,
        cancelled: threading.Event,
    ) -> List[PriceObservation]:
        attempt = 0
        while True:
            try:
                return await loop.run_in_executor(
                    executor, source.fetch, granularity, period_count, cancelled
                )
            except FetchError as e:
                if e.kind not in RETRYABLE_KINDS or attempt >= self.fetch_retries:
                    raise
                delay = self.retry_backoff * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{source.source.value} failed ({e.kind.value}), "
                    f"retry {attempt}/{self.fetch_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def fetch_all(
        self, granularity: Granularity, period_count: int
    ) -> Tuple[List[PriceObservation], List[Source], List[FetchError]]:
        """Fetch every supporting source concurrently and join the results.

        Returns:
            (observations, sources that returned data, per-source failures)

        Raises:
            PipelineError: If the fetch times out, an adapter fails with
                something other than FetchError, or fewer than min_sources
                sources return data
        """
        active = [s for s in self.sources if s.supports(granularity)]
        for skipped in (s for s in self.sources if not s.supports(granularity)):
            logger.warning(
                f"Skipping {skipped.source.value}: no {granularity.value} data offered"
            )
        if not active:
            raise PipelineError("fetch", f"no source offers {granularity.value} data")

        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=len(active), thread_name_prefix="fetch")
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *(
                        self._fetch_with_retry(
                            loop, executor, s, granularity, period_count, cancelled
                        )
                        for s in active
                    ),
                    return_exceptions=True,
                ),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise PipelineError(
                "fetch", f"sources did not all answer within {self.fetch_timeout}s"
            ) from e
        finally:
            # Adapters still running stop before their next request
            cancelled.set()
            executor.shutdown(wait=False, cancel_futures=True)

        observations: List[PriceObservation] = []
        used: List[Source] = []
        failures: List[FetchError] = []
        for source, result in zip(active, results):
            if isinstance(result, FetchError):
                logger.error(f"❌ {source.source.value}: {result}")
                failures.append(result)
            elif isinstance(result, BaseException):
                raise PipelineError(
                    "fetch", f"{source.source.value} raised {type(result).__name__}: {result}"
                ) from result
            elif not result:
                logger.warning(f"⚠️  {source.source.value} returned no observations")
            else:
                logger.info(f"✅ {source.source.value}: {len(result)} observations")
                observations.extend(result)
                used.append(source.source)

        if len(used) < self.min_sources:
            raise PipelineError(
                "fetch",
                f"{len(used)} source(s) returned data, at least {self.min_sources} required "
                f"({'; '.join(str(f) for f in failures) or 'no failures reported'})",
                failures,
            )
        if failures:
            logger.warning(
                f"Degraded run: continuing with {[s.value for s in used]} "
                f"after {len(failures)} source failure(s)"
            )
        return observations, used, failures

    async def run_async(
        self,
        granularity: Granularity,
        period_count: int,
        end: Optional[datetime] = None,
    ) -> PipelineResult:
        """Run fetch -> reconcile -> returns -> volatility once."""
        if period_count < 2:
            raise InvalidInputError(f"period_count must be >= 2, got {period_count}")

        start_time = datetime.now(timezone.utc)
        observations, used, failures = await self.fetch_all(granularity, period_count)

        try:
            points = reconcile(
                observations,
                granularity,
                period_count,
                end=end,
                min_sources_per_bucket=self.min_sources_per_bucket,
                common_end=self.common_end,
            )
        except ReconciliationError as e:
            raise PipelineError("reconcile", str(e), failures) from e

        for point in points:
            logger.debug(
                f"  {point.timestamp.isoformat()} price={point.price} "
                f"{'(interpolated)' if point.interpolated else ''}"
            )

        try:
            returns = compute_returns(points)
        except NonPositivePriceError as e:
            raise PipelineError("returns", str(e), failures) from e

        try:
            volatility = compute_volatility(returns)
        except InvalidInputError as e:
            raise PipelineError("volatility", str(e), failures) from e

        execution_time = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        return PipelineResult(
            granularity=granularity,
            period_count=period_count,
            volatility=volatility,
            points=points,
            sources_used=used,
            failures=failures,
            execution_time_ms=execution_time,
        )

    def run(
        self,
        granularity: Granularity,
        period_count: int,
        end: Optional[datetime] = None,
    ) -> PipelineResult:
        """Blocking wrapper around run_async."""
        return asyncio.run(self.run_async(granularity, period_count, end=end))
