"""
Building blocks for protocols that read messages on a background thread and hand results
back to callers through futures.
"""
import logging
import threading
from concurrent.futures import Future
from typing import Callable

logger = logging.getLogger(__name__)


class FutureValue(Future):
    """
    A future whose raw result is converted before it reaches the caller. Subclasses override
    _value_extractor(); an exception returned from it is raised by value().
    """

    def _value_extractor(self, result):
        return result

    def value(self, timeout=None):
        """
        Waits up to timeout seconds for the result.
        :raises concurrent.futures.TimeoutError: if the result has not arrived in time.
        """
        value = self._value_extractor(self.result(timeout))
        if isinstance(value, BaseException):
            raise value
        return value


class AsyncLoop:
    """
    Calls fn(*args) repeatedly on a daemon thread until stopped.
    An exception raised by fn is logged and the loop carries on.
    """

    def __init__(self, fn: Callable=None, args=(), name=None, log=logger):
        self.fn = fn
        self.args = args
        self.name = name
        self.logger = log
        self.stop_event = threading.Event()
        self.background_thread = None
        self._thread_lock = threading.Lock()

    def start(self):
        """ starts the thread. Does nothing if it is already running. """
        with self._thread_lock:
            if self.background_thread is None:
                self.background_thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self.background_thread.start()

    def _run(self):
        while self.running():
            try:
                self.fn(*self.args)
            except Exception as e:
                self.logger.exception("error in background thread %s: %s", self.name, e)
        self.logger.debug("background thread %s exiting", self.name)

    def running(self):
        return not self.stop_event.is_set()

    def request_stop(self):
        """ asks the loop to exit after the current call, without waiting for it. """
        self.stop_event.set()

    def stop(self, timeout=None):
        """
        Stops the loop and waits up to timeout seconds for the thread to exit.
        May be called from the loop's own thread.
        """
        self.request_stop()
        with self._thread_lock:
            thread, self.background_thread = self.background_thread, None
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if thread.is_alive():
            self.logger.warning("background thread %s did not exit within %s seconds", self.name, timeout)
