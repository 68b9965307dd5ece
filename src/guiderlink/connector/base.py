import logging
from abc import abstractmethod

from guiderlink.conduit.base import Conduit
from guiderlink.errors import NotConnectedError
from guiderlink.support.events import EventSource

logger = logging.getLogger(__name__)


class ConnectorEvent:
    """ base class for connector events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectorConnectedEvent(ConnectorEvent):
    """ The connector was connected. """


class ConnectorDisconnectedEvent(ConnectorEvent):
    """ The connector was disconnected. """


class Connector:
    """
    Opens a conduit to a guider endpoint.

    connect() returns silently when already connected, and raises ConnectorError when the
    endpoint cannot be reached. The conduit is only available while connected.
    """

    def __init__(self, log=logger):
        self.logger = log
        self.events = EventSource(log=log)

    @property
    @abstractmethod
    def endpoint(self):
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        raise NotImplementedError

    @property
    @abstractmethod
    def conduit(self) -> Conduit:
        """ :raises NotConnectedError: when not connected. """
        raise NotImplementedError

    @abstractmethod
    def connect(self):
        raise NotImplementedError

    @abstractmethod
    def disconnect(self):
        raise NotImplementedError


class AbstractConnector(Connector):
    """
    Runs the connect and disconnect cycle, firing an event on each transition.
    Subclasses open the conduit in _connect(); the conduit is closed here on disconnect.
    """

    def __init__(self, log=logger):
        super().__init__(log)
        self._conduit = None

    @property
    def connected(self):
        return self._conduit is not None and self._conduit.open

    def connect(self):
        if self.connected:
            return
        if self._conduit is not None:
            self.disconnect()   # a conduit closed by the peer
        self._conduit = self._connect()
        self.events.fire(ConnectorConnectedEvent(self))

    def disconnect(self):
        conduit, self._conduit = self._conduit, None
        if conduit is None:
            return
        try:
            self._disconnect()
        finally:
            conduit.close()
        self.logger.debug("disconnected from %s", self.endpoint)
        self.events.fire(ConnectorDisconnectedEvent(self))

    @abstractmethod
    def _connect(self) -> Conduit:
        """ opens the conduit, or raises ConnectorError. """
        raise NotImplementedError

    def _disconnect(self):
        """ runs before the conduit is closed. """

    @property
    def conduit(self) -> Conduit:
        self.check_connected()
        return self._conduit

    def check_connected(self):
        if not self.connected:
            raise NotConnectedError("not connected to %s" % (self.endpoint,))
