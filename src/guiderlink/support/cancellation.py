import threading
import time


class CancellationToken:
    """
    Signals that a long running operation should stop, either because cancel() was called
    or because its deadline has passed.

    :param deadline: the absolute time, on the given clock, after which the token reports
        cancelled. None for no deadline.
    """

    def __init__(self, deadline=None, clock=time.monotonic):
        self._event = threading.Event()
        self.deadline = deadline
        self._clock = clock

    @classmethod
    def with_timeout(cls, timeout=None, clock=time.monotonic):
        """ creates a token that expires timeout seconds from now. """
        return cls(None if timeout is None else clock() + timeout, clock)

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set() or self.expired

    @property
    def expired(self):
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self):
        """ the time remaining until the deadline, or None if there is no deadline. """
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def wait(self, delay):
        """
        Waits for up to delay seconds, returning early if the token is cancelled or the deadline passes.
        :return: True if the token was cancelled during (or before) the wait.
        """
        remaining = self.remaining()
        if remaining is not None and remaining < delay:
            self._event.wait(remaining)
        else:
            self._event.wait(delay)
        return self.cancelled
