"""Normalized price observation model."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Source(str, Enum):
    """Logical price sources feeding the reconciler."""

    EXCHANGE_A = "exchange_a"
    EXCHANGE_B = "exchange_b"
    ON_CHAIN = "on_chain"
    AGGREGATOR = "aggregator"


class PriceObservation(BaseModel):
    """One source's price for one bucket."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Bucket start, truncated to granularity")
    average_price: Optional[Decimal] = Field(None, description="Average trade price")
    volume_weighted_price: Optional[Decimal] = Field(
        None, description="Volume weighted average price"
    )
    source: Source = Field(..., description="Source that reported this observation")

    @field_validator("average_price", "volume_weighted_price")
    @classmethod
    def price_must_be_positive(cls, v, info):
        """Validate that a reported price is > 0."""
        if v is not None and v <= 0:
            raise ValueError(f"{info.field_name} must be > 0, got {v}")
        return v

    @model_validator(mode="after")
    def at_least_one_price(self):
        """Validate that the observation carries a price."""
        if self.average_price is None and self.volume_weighted_price is None:
            raise ValueError("average_price and volume_weighted_price cannot both be missing")
        return self
