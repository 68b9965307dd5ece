"""
The guider's line-oriented JSON-RPC protocol.

Each request is one JSON object on one line, terminated by CRLF:

    {"method": "set_exposure", "params": [2000], "id": 7}

The guider answers with a line carrying "jsonrpc" and the same id, holding either a
"result" or an "error" object. Every other line is an unsolicited event notification,
identified by its "Event" attribute (AppState, GuideStep, SettleDone and so on).

This module is the protocol boundary: remote failures are classified here, once, into
a ProtocolErrorKind. Code further up branches on the kind and keeps the remote message
only as diagnostic text.
"""
import itertools
import json
import logging
import threading
from collections import defaultdict
from concurrent.futures import TimeoutError as FutureTimeoutError

from guiderlink.conduit.base import Conduit
from guiderlink.errors import ProtocolError, ProtocolErrorKind
from guiderlink.protocol.background import AsyncLoop, FutureValue
from guiderlink.support.events import EventSource
from guiderlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601

# remote messages for conditions that are distinguished by the guider only in text
_message_kinds = (
    ('method not found', ProtocolErrorKind.UNSUPPORTED_METHOD),
    ('no star selected', ProtocolErrorKind.NO_STAR_SELECTED),
    ('no image available', ProtocolErrorKind.NO_IMAGE_AVAILABLE),
    ('invalid axis', ProtocolErrorKind.INVALID_AXIS),
)


def classify_error(code, message) -> ProtocolErrorKind:
    """
    Determines the kind of a remote error.
    >>> classify_error(-32601, 'Method not found')
    <ProtocolErrorKind.UNSUPPORTED_METHOD: 'unsupported_method'>
    >>> classify_error(1, 'no star selected')
    <ProtocolErrorKind.NO_STAR_SELECTED: 'no_star_selected'>
    >>> classify_error(1, 'cannot dither when not guiding')
    <ProtocolErrorKind.REMOTE: 'remote'>
    """
    if code == METHOD_NOT_FOUND:
        return ProtocolErrorKind.UNSUPPORTED_METHOD
    text = (message or '').lower()
    for fragment, kind in _message_kinds:
        if fragment in text:
            return kind
    return ProtocolErrorKind.REMOTE


class GuiderRequest(ValueObject):
    """ A call to a guider method. Scalar parameters are sent as a one-element list. """

    def __init__(self, method, params=None, request_id=None):
        self.method = method
        self.params = self._wrap(params)
        self.request_id = request_id

    @staticmethod
    def _wrap(params):
        if params is None or isinstance(params, (list, dict)):
            return params
        if isinstance(params, tuple):
            return list(params)
        return [params]

    def to_json(self):
        request = {'method': self.method, 'id': self.request_id}
        if self.params is not None:
            request['params'] = self.params
        return request

    def to_line(self):
        """
        >>> GuiderRequest('set_paused', True, 3).to_line()
        '{"method":"set_paused","id":3,"params":[true]}'
        """
        return json.dumps(self.to_json(), separators=(',', ':'))

    @property
    def response_keys(self):
        return [self.request_id]


class GuiderResponse(ValueObject):
    """ The guider's answer to a request. """

    def __init__(self, request_id, result=None, error=None):
        self.request_id = request_id
        self.result = result
        self.error = error

    @property
    def response_key(self):
        return self.request_id

    @property
    def failed(self):
        return self.error is not None

    def error_for(self, method=None) -> ProtocolError:
        error = self.error if isinstance(self.error, dict) else {'message': str(self.error)}
        code = error.get('code')
        message = error.get('message') or 'guider reported an error'
        return ProtocolError(classify_error(code, message), message, code=code, method=method)


class GuiderEvent(ValueObject):
    """ An unsolicited notification from the guider. """

    def __init__(self, name, attributes):
        self.name = name
        self.attributes = attributes

    def get(self, key, default=None):
        return self.attributes.get(key, default)


def decode_message(text):
    """
    Decodes one line from the guider.
    :return: a GuiderResponse or a GuiderEvent
    :raises ValueError: if the line is not a JSON object
    """
    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("expected a JSON object")
    if 'jsonrpc' in message:
        return GuiderResponse(message.get('id'), message.get('result'), message.get('error'))
    return GuiderEvent(message.get('Event'), message)


class FutureResponse(FutureValue):
    """ Relates a request and it's future response."""

    def __init__(self, request: GuiderRequest):
        super().__init__()
        self._request = request

    @property
    def request(self):
        return self._request

    def _value_extractor(self, response):
        if response.failed:
            return response.error_for(self._request.method)
        return response.result


class JsonRpcProtocolHandler:
    """
    Runs the JSON-RPC protocol over a conduit.

    Requests are written synchronously by the calling thread. Responses and events are read
    by a background thread, which completes the FutureResponse registered for the request id
    and fires events to the `events` listeners. When the conduit reaches end of stream, all
    outstanding requests fail with a DISCONNECTED ProtocolError and `disconnected` listeners
    are notified.

    :param conduit: The conduit over which the protocol is conducted
    :param call_timeout: the default time to wait for a response, in seconds
    """

    def __init__(self, conduit: Conduit, call_timeout=10, log=logger):
        self._conduit = conduit
        self.call_timeout = call_timeout
        self.logger = log
        self._ids = itertools.count(1)
        self._requests = defaultdict(list)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._lost = False
        self.events = EventSource()
        self.disconnected = EventSource()
        self.async_thread = AsyncLoop(self.background_loop, name='guider-reader', log=log)

    @property
    def open(self):
        return not self._lost and self._conduit.open

    def start_background_thread(self):
        self.async_thread.start()

    def shutdown(self, timeout=5):
        """ stops reading, closes the conduit and fails any outstanding requests. """
        self.async_thread.request_stop()
        self._conduit.close()
        self.async_thread.stop(timeout)
        self._connection_lost("connection closed")

    def async_request(self, method, params=None) -> FutureResponse:
        """ Sends a request to the guider.
        :return: A FutureResponse where the corresponding response can be retrieved when it arrives.
        """
        if not self.open:
            raise ProtocolError(ProtocolErrorKind.DISCONNECTED, "guider server disconnected", method=method)
        request = GuiderRequest(method, params, next(self._ids))
        future = FutureResponse(request)
        self._register_future(future)
        try:
            with self._write_lock:
                self._conduit.write_line(request.to_line())
        except (OSError, ValueError) as e:
            self.discard_future(future)
            raise ProtocolError(ProtocolErrorKind.DISCONNECTED,
                                "failed to send %s to the guider: %s" % (method, e), method=method) from e
        self.logger.debug("guider call: %s", request.to_line())
        return future

    def call(self, method, params=None, timeout=None):
        """ Sends a request and waits for its result.
        :raises ProtocolError: if the guider reports an error, disconnects, or does not answer in time.
        """
        future = self.async_request(method, params)
        try:
            return future.value(self.call_timeout if timeout is None else timeout)
        except FutureTimeoutError:
            self.discard_future(future)
            raise ProtocolError(ProtocolErrorKind.TIMEOUT,
                                "timeout waiting for response to %s" % method, method=method)

    def discard_future(self, future: FutureResponse):
        self._unregister_future(future)

    def _register_future(self, future: FutureResponse):
        with self._lock:
            for key in future.request.response_keys:
                self._requests[key].append(future)

    def _unregister_future(self, future: FutureResponse):
        with self._lock:
            for key in future.request.response_keys:
                pending = self._requests.get(key)
                if pending and future in pending:
                    pending.remove(future)
                    if not pending:
                        del self._requests[key]

    def background_loop(self):
        """ reads and processes one line. Stops the background thread at end of stream. """
        if not self._conduit.open:
            self._connection_lost("connection closed")
            return None
        try:
            line = self._conduit.read_line()
        except (OSError, ValueError) as e:
            self._connection_lost("error reading from the guider: %s" % e)
            return None
        if line is None:
            self._connection_lost("guider closed the connection")
            return None
        return self.process_line(line)

    def process_line(self, line):
        """
        Decodes a line and dispatches it as a response or an event.
        Lines that are not JSON objects are logged and dropped.
        """
        text = line.decode('utf-8', errors='replace') if isinstance(line, bytes) else line
        text = text.strip()
        if not text:
            return None
        try:
            message = decode_message(text)
        except ValueError as e:
            self.logger.warning("invalid JSON from guider: %s: %s", e, text)
            return None

        if isinstance(message, GuiderResponse):
            with self._lock:
                futures = self._requests.pop(message.response_key, [])
            if not futures:
                self.logger.warning("unmatched response from guider: %s", text)
            for future in futures:
                future.set_result(message)
        else:
            self.events.fire(message)
        return message

    def _connection_lost(self, reason):
        self.async_thread.request_stop()
        with self._lock:
            was_lost = self._lost
            self._lost = True
            pending = [f for futures in self._requests.values() for f in futures]
            self._requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ProtocolError(ProtocolErrorKind.DISCONNECTED,
                                                   "guider server disconnected during call: %s" % reason,
                                                   method=future.request.method))
        if not was_lost:
            self.logger.info("guider connection lost: %s", reason)
            self.disconnected.fire(reason)
