# src/hvac_loader/cancellation.py

import threading
from typing import Callable, Optional

from aws_lambda_powertools.utilities.typing import LambdaContext

from .exceptions import IngestionCancelledError


class CancellationToken:
    """
    Cancellation shared by the stream reader and every dispatch task of one
    ingestion. Trips either when `cancel()` is called or when the optional
    deadline check reports that time has run out.
    """

    def __init__(self, deadline_exceeded: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self._deadline_exceeded = deadline_exceeded
        self._reason: str | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_lambda_context(
        cls, context: LambdaContext, guard_threshold_ms: int
    ) -> "CancellationToken":
        """Token that trips once the invocation has less than *guard_threshold_ms* left."""
        return cls(
            deadline_exceeded=lambda: context.get_remaining_time_in_millis()
            < guard_threshold_ms
        )

    def cancel(self, reason: str = "cancelled by caller") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline_exceeded is not None and self._deadline_exceeded():
            self.cancel("timeout guard threshold reached")
            return True
        return False

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise IngestionCancelledError(self._reason or "cancelled")
