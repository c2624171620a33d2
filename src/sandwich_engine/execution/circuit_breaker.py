"""Per-token circuit breaker on repeated reverts."""
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    # Reverts within `window_seconds` that open the breaker
    threshold: int = 3
    window_seconds: float = 600.0
    cooldown_seconds: float = 1800.0


class TokenCircuitBreaker:
    """
    Cools a token down after repeated reverts.

    Independent of the safety screener: it catches tokens whose trap the
    screener's checks did not model.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._reverts: Dict[str, Deque[float]] = defaultdict(deque)
        self._open_until: Dict[str, float] = {}

    def is_open(self, token: str) -> bool:
        token = token.lower()
        until = self._open_until.get(token)
        if until is None:
            return False
        if self._clock() >= until:
            del self._open_until[token]
            logger.info(f"Circuit breaker closed for {token}")
            return False
        return True

    def record_revert(self, token: str):
        token = token.lower()
        now = self._clock()
        history = self._reverts[token]
        history.append(now)
        while history and now - history[0] > self.config.window_seconds:
            history.popleft()

        if len(history) >= self.config.threshold:
            self._open_until[token] = now + self.config.cooldown_seconds
            history.clear()
            logger.warning(
                f"Circuit breaker opened for {token} for {self.config.cooldown_seconds:.0f}s "
                f"after {self.config.threshold} reverts"
            )

    def record_success(self, token: str):
        self._reverts.pop(token.lower(), None)

    def open_tokens(self):
        return [token for token in list(self._open_until) if self.is_open(token)]
