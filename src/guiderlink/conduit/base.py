from abc import abstractmethod
from io import IOBase

# the guider terminates each message with CRLF
LINE_TERMINATOR = b'\r\n'
ENCODING = 'utf-8'


class Conduit:
    """
    A two-way, line oriented channel to the guider. Subclasses provide the byte streams;
    the conduit frames messages on them as UTF-8 text lines.
    """

    @property
    @abstractmethod
    def target(self):
        """ the object the conduit talks through, such as the socket. """
        raise NotImplementedError

    @property
    @abstractmethod
    def input(self) -> IOBase:
        raise NotImplementedError

    @property
    @abstractmethod
    def output(self) -> IOBase:
        raise NotImplementedError

    @property
    @abstractmethod
    def open(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def close(self):
        raise NotImplementedError

    def read_line(self) -> str:
        """
        Blocks until a complete line arrives.
        :return: the line without its terminator, or None at end of stream.
        """
        data = self.input.readline()
        if not data:
            return None
        return data.decode(ENCODING, errors='replace').rstrip('\r\n')

    def write_line(self, text: str):
        """ sends one line and flushes it. Callers serialize concurrent writes. """
        self.output.write(text.encode(ENCODING) + LINE_TERMINATOR)
        self.output.flush()


class DefaultConduit(Conduit):
    """
    A conduit over given binary streams, typically in memory. The read and write
    streams may be the same object.
    """

    def __init__(self, read, write=None, target=None):
        self._read = read
        self._write = read if write is None else write
        self._target = target
        self._closed = False

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._read.close()
        if self._write is not self._read:
            self._write.close()

    @property
    def target(self):
        return self._target

    @property
    def open(self):
        return not self._closed

    @property
    def input(self) -> IOBase:
        return self._read

    @property
    def output(self) -> IOBase:
        return self._write
