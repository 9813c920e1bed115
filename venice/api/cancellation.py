# venice/api/cancellation.py
"""
Cooperative cancellation for pipeline calls.

A :class:`CancellationToken` is handed to a pipeline call by the caller. Every
suspension point of the call (backoff sleeps, pre-emptive throttling sleeps
and pending stream reads) waits on the token, so cancelling it, or letting
its deadline pass, interrupts the call promptly with
:class:`~venice.exceptions.CancelledError`.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from ..exceptions import CancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cancellation signal with an optional deadline.

    Args:
        timeout (float, optional): Seconds from now after which the token
            cancels itself with reason ``"deadline"``.

    Example:
        Cancel a long-running call from another thread::

            token = CancellationToken(timeout=30)
            threading.Timer(5, token.cancel).start()

            try:
                pipeline.execute(request, cancel=token)
            except CancelledError as e:
                print(f"Gave up: {e.reason}")
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._reason: Optional[str] = None
        self._timer: Optional[threading.Timer] = None
        self._unlink: Optional[Callable[[], None]] = None
        self.deadline: Optional[float] = None

        if timeout is not None:
            self.deadline = time.monotonic() + max(0.0, timeout)
            self._timer = threading.Timer(max(0.0, timeout), self._expire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def cancelled(self) -> bool:
        """Whether the token has been cancelled or its deadline passed."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """``"cancelled"``, ``"deadline"`` or ``None`` while still active."""
        return self._reason

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or ``None`` without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self, reason: str = "cancelled"):
        """
        Cancel the token and run registered callbacks once.

        Args:
            reason (str): Reason recorded on the token
        """
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            if self._timer is not None:
                self._timer.cancel()

        logger.debug(f"Cancellation token triggered ({reason})")
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]):
        """
        Register a callback run when the token is cancelled.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]):
        """Unregister a callback previously added with :meth:`add_callback`."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, seconds: float) -> bool:
        """
        Sleep for ``seconds`` unless the token is cancelled first.

        Returns:
            bool: True if the sleep was interrupted by cancellation
        """
        return self._event.wait(max(0.0, seconds))

    def raise_if_cancelled(self, attempts: Optional[int] = None):
        """Raise :class:`CancelledError` if the token is cancelled."""
        if self._event.is_set():
            reason = self._reason or "cancelled"
            message = "Request deadline exceeded" if reason == "deadline" else "Request cancelled"
            raise CancelledError(message, reason=reason, attempts=attempts)

    def linked(self, timeout: Optional[float] = None) -> "CancellationToken":
        """
        Create a child token that is cancelled along with this one.

        The child can carry its own, usually shorter, deadline. Cancelling
        the child does not cancel this token.

        Args:
            timeout (float, optional): Deadline of the child in seconds from now
        """
        child = CancellationToken(timeout)

        def propagate():
            child.cancel(self._reason or "cancelled")

        self.add_callback(propagate)
        child._unlink = lambda: self.remove_callback(propagate)
        return child

    def dispose(self):
        """Stop the deadline timer and detach from a parent, without cancelling."""
        if self._timer is not None:
            self._timer.cancel()
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def _expire(self):
        self.cancel(reason="deadline")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self._reason})"


def sleep(seconds: float, cancel: Optional[CancellationToken] = None,
          attempts: Optional[int] = None):
    """
    Interruptible sleep used for backoff and throttling.

    Raises:
        CancelledError: If ``cancel`` fires before the sleep completes
    """
    if seconds <= 0:
        if cancel is not None:
            cancel.raise_if_cancelled(attempts)
        return

    if cancel is None:
        time.sleep(seconds)
        return

    if cancel.wait(seconds):
        cancel.raise_if_cancelled(attempts)
