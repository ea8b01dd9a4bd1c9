"""
Cancellation Scope

Deadline and cancel signal shared by the queries of one or more passes.
The client checks it before every request and caps each request timeout
to the time left, so an expired scope stops in-flight work promptly.
"""

import threading
import time
from typing import Optional

from ..errors import PassCancelledError


class CancelScope:
    """
    Deadline plus explicit cancel flag.

    Example:
        scope = CancelScope(timeout=120)
        client = ClusterClient(api_client, cancel_scope=scope)
        ...
        scope.cancel()  # e.g. from a KeyboardInterrupt handler
    """

    def __init__(self, timeout: Optional[float] = None, clock=time.monotonic):
        self._clock = clock
        self._event = threading.Event()
        self.deadline = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def request_timeout(self, default: float) -> float:
        """Timeout for the next request, never past the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)

    def check(self) -> None:
        """
        Raises:
            PassCancelledError: If cancelled or past the deadline
        """
        if self._event.is_set():
            raise PassCancelledError("Diagnostic pass cancelled")
        if self.expired:
            raise PassCancelledError(
                "Diagnostic pass exceeded its deadline",
                hint="Increase --timeout or narrow the namespace scope",
            )
