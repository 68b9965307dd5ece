import logging
import threading

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    Notifies registered handlers of events.

    Handlers may be added and removed from any thread. Events are delivered on the firing
    thread, to a snapshot of the handlers registered when fire() was called. An exception
    raised by a handler is logged and does not prevent delivery to the remaining handlers.
    """

    def __init__(self, log=logger):
        self._handlers = []
        self._lock = threading.Lock()
        self.logger = log

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        with self._lock:
            self._handlers.append(handler)
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
        return self

    def handlers(self):
        with self._lock:
            return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        for handler in self.handlers():
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.logger.exception("event handler %s failed: %s", handler, e)

