"""Exponential reconnect backoff for one backend.

Delays::

    delay(n) = min(base_delay * factor ** (n - 1) * (1 + U[0, jitter)), max_delay)

With ``factor >= 1 + jitter`` (enforced by :class:`ReconnectSettings`)
successive delays never decrease.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from mcp_switchboard.config.schema import ReconnectSettings

logger = logging.getLogger(__name__)


class ReconnectBackoff:
    """Attempt counter and delay schedule.

    Parameters
    ----------
    name:
        Backend server name (for logging).
    settings:
        Base delay, growth factor, cap, jitter fraction and attempt budget.
    rng:
        Source of jitter; defaults to the :mod:`random` module state.
    """

    def __init__(
        self,
        name: str,
        settings: Optional[ReconnectSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.name = name
        self.settings = settings or ReconnectSettings()
        self._rng = rng or random.Random()
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        """True once ``max_attempts`` attempts have been made."""
        return self._attempts >= self.settings.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the *attempt*-th attempt (1-based)."""
        s = self.settings
        raw = s.base_delay * (s.factor ** max(attempt - 1, 0))
        if s.jitter:
            raw *= 1 + self._rng.random() * s.jitter
        return min(raw, s.max_delay)

    def next_delay(self) -> float:
        """Delay before the next attempt."""
        return self.delay_for(self._attempts + 1)

    def record_attempt(self) -> int:
        self._attempts += 1
        logger.debug(
            "[%s] Reconnect attempt %d/%d", self.name, self._attempts, self.settings.max_attempts
        )
        return self._attempts

    def reset(self) -> None:
        if self._attempts:
            logger.debug("[%s] Reconnect backoff reset after %d attempt(s)", self.name, self._attempts)
        self._attempts = 0

    def to_dict(self) -> dict:
        """Snapshot for status views."""
        return {
            "attempts": self._attempts,
            "max_attempts": self.settings.max_attempts,
            "next_delay": None if self.exhausted else round(self.next_delay(), 3),
        }
