"""
The error taxonomy shared by the profile store, the guider client and the session.

Every failure raised by guiderlink is one of these kinds:

- NotFound          an absent file, profile or setting
- InvalidArgument   a bad profile number, src == dst, an empty path or name
- NotConnected      a command was issued with no live guider connection
- ConnectExhausted  the connect retry budget ran out (or the attempt was cancelled)
- ProtocolError     the guider rejected a call. The kind is decided once, at the protocol boundary.
- IOFailure         the operating system failed a read or write (OSError)

error_tag() and error_status() give the stable tag and status code an outer layer
(such as an HTTP API) reports for each kind.
"""
from enum import Enum


class GuiderLinkError(Exception):
    """ base class for errors raised by guiderlink. """


class NotFoundError(GuiderLinkError, LookupError):
    """ The requested file, profile or setting does not exist. """


class ProfileNotFoundError(NotFoundError):
    """ The profile file does not exist. """


class InvalidArgumentError(GuiderLinkError, ValueError):
    """ An argument is outside the domain accepted by the operation. """


class ConnectorError(GuiderLinkError):
    """ Indicates an error condition with a connection. """


class NotConnectedError(ConnectorError):
    """ Indicates a connection is in the disconnected state when a connection is required. """


class ConnectExhaustedError(ConnectorError):
    """ All connection attempts failed. """

    def __init__(self, message, host=None, port=None, attempts=0, cause=None):
        super().__init__(message)
        self.host = host
        self.port = port
        self.attempts = attempts
        self.cause = cause


class ConnectCancelledError(ConnectExhaustedError):
    """ The connection attempt was cancelled, or its deadline passed, before it succeeded. """


class ProtocolErrorKind(Enum):
    INVALID_AXIS = 'invalid_axis'
    INVALID_PARAMETER = 'invalid_parameter'
    UNSUPPORTED_METHOD = 'unsupported_method'
    NO_STAR_SELECTED = 'no_star_selected'
    NO_IMAGE_AVAILABLE = 'no_image_available'
    METADATA_UNAVAILABLE = 'metadata_unavailable'
    TIMEOUT = 'timeout'
    DISCONNECTED = 'disconnected'
    REMOTE = 'remote'


# kinds that are an expected part of normal operation, and are logged quietly
BENIGN_PROTOCOL_KINDS = frozenset([
    ProtocolErrorKind.INVALID_AXIS,
    ProtocolErrorKind.UNSUPPORTED_METHOD,
    ProtocolErrorKind.NO_STAR_SELECTED,
    ProtocolErrorKind.NO_IMAGE_AVAILABLE,
    ProtocolErrorKind.METADATA_UNAVAILABLE,
])


class ProtocolError(GuiderLinkError):
    """
    The guider failed or rejected a call.

    :param kind:    the ProtocolErrorKind. Callers branch on this, never on the message.
    :param message: the diagnostic text, as reported by the guider where there is one.
    :param code:    the JSON-RPC error code, if the guider supplied one.
    :param method:  the method that was called.
    """
    def __init__(self, kind: ProtocolErrorKind, message, code=None, method=None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.method = method

    @property
    def benign(self):
        return self.kind in BENIGN_PROTOCOL_KINDS


_protocol_status = {
    ProtocolErrorKind.INVALID_AXIS: 400,
    ProtocolErrorKind.INVALID_PARAMETER: 400,
    ProtocolErrorKind.UNSUPPORTED_METHOD: 501,
    ProtocolErrorKind.NO_STAR_SELECTED: 404,
    ProtocolErrorKind.NO_IMAGE_AVAILABLE: 404,
    ProtocolErrorKind.METADATA_UNAVAILABLE: 404,
    ProtocolErrorKind.TIMEOUT: 504,
    ProtocolErrorKind.DISCONNECTED: 502,
    ProtocolErrorKind.REMOTE: 502,
}

# ordered most specific first
_tags = (
    (NotFoundError, 'not_found', 404),
    (InvalidArgumentError, 'invalid_argument', 400),
    (NotConnectedError, 'not_connected', 409),
    (ConnectExhaustedError, 'connect_exhausted', 503),
    (ConnectorError, 'connector_error', 503),
    (FileNotFoundError, 'not_found', 404),
    (OSError, 'io_failure', 500),
)


def error_tag(e: BaseException) -> str:
    """
    Retrieves the stable tag for an error.
    >>> error_tag(NotConnectedError())
    'not_connected'
    >>> error_tag(ProtocolError(ProtocolErrorKind.NO_STAR_SELECTED, 'no star selected'))
    'protocol.no_star_selected'
    """
    if isinstance(e, ProtocolError):
        return 'protocol.' + e.kind.value
    for cls, tag, status in _tags:
        if isinstance(e, cls):
            return tag
    return 'internal'


def error_status(e: BaseException) -> int:
    """
    Retrieves the status code an outer layer reports for an error.
    >>> error_status(InvalidArgumentError('bad'))
    400
    """
    if isinstance(e, ProtocolError):
        return _protocol_status[e.kind]
    for cls, tag, status in _tags:
        if isinstance(e, cls):
            return status
    return 500
