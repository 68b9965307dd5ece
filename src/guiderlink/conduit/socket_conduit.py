import socket

from guiderlink.conduit.base import Conduit


class SocketConduit(Conduit):
    """
    Carries guider lines over a connected TCP socket.
    :param sock: the connected client socket. The conduit takes ownership of it.
    """
    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._input = sock.makefile('rb')
        self._output = sock.makefile('wb')
        self._closed = False

    @property
    def open(self) -> bool:
        return not self._closed and self.sock.fileno() >= 0

    @property
    def target(self):
        return self.sock

    @property
    def input(self):
        return self._input

    @property
    def output(self):
        return self._output

    def close(self):
        """
        Shuts down the socket before closing the streams. A thread blocked in read_line()
        holds the input stream's lock until the shutdown wakes it.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass    # already closed by the peer
        try:
            self._input.close()
            self._output.close()
        except OSError:
            pass    # unflushed output to a peer that has gone
        finally:
            self.sock.close()
