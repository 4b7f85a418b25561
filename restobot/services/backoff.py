from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock


@dataclass
class BackoffDecision:
    delay_seconds: float
    consecutive_failures: int


class IntegrationBackoffService(ABC):
    @abstractmethod
    def before_request(self, *, integration: str) -> BackoffDecision:
        """Delay to apply before calling the external service."""

    @abstractmethod
    def register_success(self, *, integration: str) -> None:
        """Reset the consecutive failure count."""

    @abstractmethod
    def register_failure(self, *, integration: str) -> int:
        """Count one more consecutive failure and return the total."""


class InMemoryBackoffService(IntegrationBackoffService):
    def __init__(self, *, threshold: int = 3, max_backoff_seconds: float = 8.0) -> None:
        self.threshold = threshold
        self.max_backoff_seconds = max_backoff_seconds
        self._failures: dict[str, int] = {}
        self._lock = Lock()

    def before_request(self, *, integration: str) -> BackoffDecision:
        with self._lock:
            failures = self._failures.get(integration, 0)
            if failures < self.threshold:
                return BackoffDecision(delay_seconds=0.0, consecutive_failures=failures)

            power = failures - self.threshold
            delay = min((2 ** power), self.max_backoff_seconds)
            return BackoffDecision(delay_seconds=float(delay), consecutive_failures=failures)

    def register_success(self, *, integration: str) -> None:
        with self._lock:
            self._failures.pop(integration, None)

    def register_failure(self, *, integration: str) -> int:
        with self._lock:
            failures = self._failures.get(integration, 0) + 1
            self._failures[integration] = failures
            return failures
