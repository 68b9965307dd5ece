import unittest

from hamcrest import assert_that, close_to, is_, none

from guiderlink.support.cancellation import CancellationToken


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class CancellationTokenTest(unittest.TestCase):

    def test_not_cancelled_initially(self):
        sut = CancellationToken()
        assert_that(sut.cancelled, is_(False))
        assert_that(sut.remaining(), is_(none()))

    def test_cancel(self):
        sut = CancellationToken()
        sut.cancel()
        assert_that(sut.cancelled, is_(True))
        assert_that(sut.wait(10), is_(True))

    def test_deadline(self):
        clock = FakeClock()
        sut = CancellationToken.with_timeout(5, clock)
        assert_that(sut.remaining(), is_(close_to(5, 0.0001)))
        assert_that(sut.cancelled, is_(False))
        clock.now = 105.0
        assert_that(sut.expired, is_(True))
        assert_that(sut.cancelled, is_(True))
        assert_that(sut.remaining(), is_(0.0))

    def test_wait_returns_false_when_not_cancelled(self):
        sut = CancellationToken()
        assert_that(sut.wait(0.01), is_(False))

    def test_wait_is_bounded_by_deadline(self):
        sut = CancellationToken.with_timeout(0.01)
        assert_that(sut.wait(30), is_(True))
