import logging
import socket

from guiderlink.conduit.base import Conduit
from guiderlink.conduit.socket_conduit import SocketConduit
from guiderlink.connector.base import AbstractConnector
from guiderlink.errors import ConnectorError, InvalidArgumentError
from guiderlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)

# the guider's first instance listens here, instance n on DEFAULT_BASE_PORT + n - 1
DEFAULT_BASE_PORT = 4400


class GuiderEndpoint(ValueObject):
    """
    Describes the TCP server endpoint of one guider instance.
    """
    def __init__(self, hostname='localhost', instance=1, base_port=DEFAULT_BASE_PORT):
        if instance < 1:
            raise InvalidArgumentError("guider instance must be >= 1, not %s" % instance)
        self.hostname = hostname
        self.instance = instance
        self.base_port = base_port

    @property
    def port(self):
        """
        >>> GuiderEndpoint('localhost', 3).port
        4402
        """
        return self.base_port + self.instance - 1

    @property
    def address(self):
        return self.hostname, self.port

    def key(self):
        """
        >>> GuiderEndpoint('scope-pi', 1).key()
        'scope-pi:4400'
        """
        return str(self.hostname) + ':' + str(self.port)


class SocketConnector(AbstractConnector):
    """
    Connects to a guider endpoint over TCP.
    :param endpoint: the GuiderEndpoint to connect to
    :param timeout: how long to wait for the connection to be accepted, in seconds
    :param report_errors: when False, connection failures are logged at debug rather than warning
    """
    def __init__(self, endpoint: GuiderEndpoint, timeout=5, report_errors=True, log=logger):
        super().__init__(log)
        self._endpoint = endpoint
        self._timeout = timeout
        self._report_errors = report_errors

    @property
    def endpoint(self) -> GuiderEndpoint:
        return self._endpoint

    def _connect(self) -> Conduit:
        address = self._endpoint.address
        try:
            sock = socket.create_connection(address, self._timeout)
        except OSError as e:
            method = self.logger.warning if self._report_errors else self.logger.debug
            method("error opening socket to %s: %s", self._endpoint.key(), e)
            raise ConnectorError("cannot connect to %s: %s" % (self._endpoint.key(), e)) from e
        sock.settimeout(None)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.logger.info("opened socket to %s", self._endpoint.key())
        return SocketConduit(sock)
