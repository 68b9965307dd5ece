import threading
import unittest
from concurrent.futures import TimeoutError as FutureTimeoutError
from unittest.mock import Mock

import timeout_decorator
from hamcrest import assert_that, calling, greater_than_or_equal_to, is_, none, raises

from guiderlink.protocol.background import AsyncLoop, FutureValue


def debug_timeout(value):
    """
    Replaces the timeout value with a very large one if the tests are running under a debugger.
    This prevents the main thread from throwing an exception and exiting when the test times out
    due to a breakpoint.
    """
    import sys
    return value if sys.gettrace() is None else 100000


class FutureValueTest(unittest.TestCase):

    def test_value(self):
        sut = FutureValue()
        sut.set_result(42)
        assert_that(sut.value(), is_(42))

    def test_exception(self):
        sut = FutureValue()
        sut.set_exception(ValueError("bad"))
        assert_that(calling(sut.value), raises(ValueError, "bad"))

    def test_extracted_exception_is_raised(self):
        sut = FutureValue()
        sut._value_extractor = lambda v: v[0]
        sut.set_result([KeyError("missing")])
        assert_that(calling(sut.value), raises(KeyError))

    def test_timeout(self):
        assert_that(calling(FutureValue().value).with_args(0.01), raises(FutureTimeoutError))


class AsyncLoopTest(unittest.TestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_runs_until_stopped(self):
        calls = []
        ran = threading.Event()

        def fn(value):
            calls.append(value)
            if len(calls) >= 3:
                ran.set()

        sut = AsyncLoop(fn, ('x',), name='test-loop')
        sut.start()
        sut.start()
        ran.wait()
        sut.stop(5)
        assert_that(len(calls), is_(greater_than_or_equal_to(3)))
        assert_that(sut.background_thread, is_(none()))
        assert_that(sut.running(), is_(False))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_exceptions_are_handled(self):
        log = Mock()
        failed = threading.Event()

        def fn():
            failed.set()
            raise ValueError("loop failure")

        sut = AsyncLoop(fn, log=log)
        sut.start()
        failed.wait()
        sut.stop(5)
        assert_that(log.exception.called, is_(True))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_stop_from_loop_thread(self):
        sut = AsyncLoop()
        sut.fn = lambda: sut.stop()
        sut.start()
        thread = sut.background_thread
        if thread is not None:
            thread.join(5)
        assert_that(sut.running(), is_(False))

    def test_stop_without_start(self):
        sut = AsyncLoop(Mock())
        sut.stop()
        assert_that(sut.running(), is_(False))


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
