"""Result models for the volatility pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List

from ..sources.base import FetchError, Granularity
from .observation import Source


@dataclass(frozen=True)
class ReconciledPoint:
    """One bucket of the reconciled price series."""

    timestamp: datetime
    price: Decimal
    interpolated: bool


@dataclass(frozen=True)
class PeriodReturn:
    """Simple return from the previous bucket to this one."""

    timestamp: datetime
    value: Decimal


@dataclass(frozen=True)
class VolatilityResult:
    """Sample statistics of the period returns."""

    sample_size: int
    mean_return: Decimal
    std_dev: Decimal


@dataclass
class PipelineResult:
    """Result of one pipeline run."""

    granularity: Granularity
    period_count: int
    volatility: VolatilityResult
    points: List[ReconciledPoint]
    sources_used: List[Source]
    failures: List[FetchError] = field(default_factory=list)
    execution_time_ms: int = 0

    @property
    def interpolated_count(self) -> int:
        return sum(1 for p in self.points if p.interpolated)
