"""
Runtime tuning for the sync engine.

Provides centralized configuration for:
- Batch tuning (chunk size, retries, backoff, memory threshold)
- Campaign-to-campaign transition rules
- The tier list used to build campaign group names

Out-of-range batch values are clamped rather than rejected so an operator
typo never stops the scheduler.
"""
from typing import List

from pydantic import BaseModel, Field, field_validator

from bema_sync.lib.logging import get_logger
from bema_sync.lib.settings import Settings


logger = get_logger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10000
MIN_MEMORY_THRESHOLD = 0.1
MAX_MEMORY_THRESHOLD = 0.9
MAX_RETRY_DELAY_SECONDS = 3600


def clamp(value, lower, upper):
    return max(lower, min(upper, value))


class BatchTuning(BaseModel):
    """
    Chunking, retry and resource limits for the batch processor.
    """

    batch_size: int = Field(default=1000, description="Items per chunk, clamped to [1, 10000]")
    retry_attempts: int = Field(default=3, description="Attempts per chunk (>= 1)")
    retry_delay_seconds: int = Field(default=300, description="Base backoff delay (>= 1)")
    memory_limit: str = Field(default="256M", description="K/M/G suffix, -1 or 'unlimited'")
    memory_threshold: float = Field(default=0.8, description="Clamped to [0.1, 0.9]")
    failure_rate_threshold: float = Field(default=0.2, ge=0, le=1)

    @field_validator("batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, value):
        clamped = clamp(int(value), MIN_BATCH_SIZE, MAX_BATCH_SIZE)
        if clamped != int(value):
            logger.warning("Batch size %s out of range, clamped to %s", value, clamped)
        return clamped

    @field_validator("retry_attempts", "retry_delay_seconds", mode="before")
    @classmethod
    def _at_least_one(cls, value):
        return max(1, int(value))

    @field_validator("memory_threshold", mode="before")
    @classmethod
    def _clamp_memory_threshold(cls, value):
        return clamp(float(value), MIN_MEMORY_THRESHOLD, MAX_MEMORY_THRESHOLD)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchTuning":
        return cls(
            batch_size=settings.batch_size,
            retry_attempts=settings.retry_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
            memory_limit=settings.memory_limit,
            memory_threshold=settings.memory_threshold,
            failure_rate_threshold=settings.failure_rate_threshold,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "batch_size": 1000,
                "retry_attempts": 3,
                "retry_delay_seconds": 300,
                "memory_limit": "256M",
                "memory_threshold": 0.8,
            }
        }


class TransitionRule(BaseModel):
    """
    One row of the campaign-to-campaign transition matrix: subscribers at
    ``current_tier`` in the source campaign move to ``next_tier`` in the
    destination campaign.
    """

    current_tier: str = Field(description="Tier in the source campaign, any casing")
    next_tier: str = Field(description="Tier in the destination campaign, any casing")
    requires_purchase: bool = Field(
        default=False,
        description="Only move subscribers whose recorded purchase is a valid order for their email"
    )


class TierSettings(BaseModel):
    """Tiers each campaign exposes as email-marketing groups."""

    tiers: List[str] = Field(
        default_factory=lambda: [
            "Opt-In",
            "Gold",
            "Gold Purchased",
            "Silver",
            "Silver Purchased",
            "Bronze",
            "Bronze Purchased",
            "Wood",
            "Wood Purchased",
        ],
        min_length=1,
    )


# Gold and silver are only reached through a purchase, so their rules check
# the order recorded on the link; bronze fans carry over as opt-ins.
DEFAULT_TRANSITION_RULES: List[TransitionRule] = [
    TransitionRule(current_tier="Gold", next_tier="Gold", requires_purchase=True),
    TransitionRule(current_tier="Silver", next_tier="Silver", requires_purchase=True),
    TransitionRule(current_tier="Bronze", next_tier="Opt-In"),
]
