"""Cooperative cancellation for archive runs.

Workers check the token before picking up the next link. Work already in
flight is allowed to finish and commit, so cancelling never leaves a
half-written record behind.
"""

import threading


class CancellationToken:
    """Thread-safe flag that stops a run from dispatching new work.

    It can be set from a signal handler, another thread or a coroutine.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason
