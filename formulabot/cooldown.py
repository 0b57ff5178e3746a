import time
from typing import Callable, Optional

from .config import COOLDOWN_SECONDS
from .errors import CooldownActiveError


class CooldownGate:
    """
    Minimum interval between user-initiated requests of one session.

    The first request always passes. A rejected request does not restart the interval.
    """

    def __init__(self, interval: float = COOLDOWN_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self.last_request_at: Optional[float] = None

    def remaining(self) -> float:
        if self.last_request_at is None:
            return 0.0
        elapsed = self.clock() - self.last_request_at
        return max(0.0, self.interval - elapsed)

    def check(self) -> None:
        """Raise CooldownActiveError while the interval has not passed; otherwise record the request."""
        remaining = self.remaining()
        if remaining > 0:
            raise CooldownActiveError(remaining)
        self.last_request_at = self.clock()

    def reset(self) -> None:
        self.last_request_at = None
