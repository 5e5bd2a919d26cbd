"""
services/pacing.py
Delay strategies used between certificates in the issuance loop.
"""
import asyncio
import random

from app.core.config import Settings


class NoDelay:
    async def wait(self) -> None:
        return None


class FixedDelay:
    def __init__(self, seconds: float):
        self.seconds = seconds

    async def wait(self) -> None:
        await asyncio.sleep(self.seconds)


class RandomDelay:
    """Uniform delay in [min_seconds, max_seconds]."""

    def __init__(self, min_seconds: float, max_seconds: float, rng: random.Random | None = None):
        if max_seconds < min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        return self._rng.uniform(self.min_seconds, self.max_seconds)

    async def wait(self) -> None:
        await asyncio.sleep(self.next_delay())


def build_pacing(config: Settings):
    """Pick the pacing strategy named by PROCESSING_DELAY_MODE."""
    mode = config.PROCESSING_DELAY_MODE.lower()
    if mode == "none":
        return NoDelay()
    if mode == "fixed":
        return FixedDelay(config.PROCESSING_DELAY_MIN_SECONDS)
    if mode == "random":
        return RandomDelay(config.PROCESSING_DELAY_MIN_SECONDS, config.PROCESSING_DELAY_MAX_SECONDS)
    raise ValueError(f"Unknown PROCESSING_DELAY_MODE: {config.PROCESSING_DELAY_MODE}")
