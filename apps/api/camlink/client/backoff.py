"""Reconnect backoff policy."""
from __future__ import annotations

from dataclasses import dataclass

from ..core.config import settings


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential backoff with a capped number of attempts.

    Attempts are numbered from 1. ``delay(1)`` is ``base_delay``; each later
    attempt multiplies by ``factor`` up to ``max_delay``.
    """

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 16.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.factor < 1:
            raise ValueError("Backoff factor must be >= 1")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))

    def exhausted(self, attempt: int) -> bool:
        return attempt > self.max_attempts

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_delay=settings.reconnect_base_delay_seconds,
            max_delay=settings.reconnect_max_delay_seconds,
            max_attempts=settings.max_reconnect_attempts,
        )
