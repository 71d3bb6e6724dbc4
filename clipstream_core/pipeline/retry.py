from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float

    def delay_for(self, attempt: int) -> float:
        """Capped exponential backoff: ``base * 2**attempt`` up to the cap."""
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        # Avoid float overflow for very large attempt counts.
        exponent = min(attempt, 62)
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
