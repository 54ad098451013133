"""Exponential backoff with optional jitter for change-feed reconnects."""

from __future__ import annotations

import random

from pydantic import BaseModel, Field


class BackoffConfig(BaseModel):
    """Tuneable parameters for reconnect backoff."""

    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Delay in seconds before the first reconnect attempt.",
    )
    max_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: BackoffConfig) -> float:
    """Return the backoff delay for the zero-based *attempt* given *config*."""
    delay: float = min(config.base_delay * (2 ** min(attempt, 32)), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay
