from unittest import TestCase

from hamcrest import assert_that, calling, is_, none, raises

from guiderlink.support.retry_strategy import LinearBackoffRetryStrategy, RetryStrategy


class RetryStrategyTest(TestCase):
    def test_is_zero(self):
        assert_that(RetryStrategy()(1), is_(0))


class LinearBackoffRetryStrategyTest(TestCase):

    def test_delay_grows_linearly(self):
        retry = LinearBackoffRetryStrategy(10, 1.0)
        assert_that(retry(1), is_(1.0))
        assert_that(retry(2), is_(2.0))
        assert_that(retry(9), is_(9.0))

    def test_budget_exhausted(self):
        retry = LinearBackoffRetryStrategy(3, 0.25)
        assert_that(retry(2), is_(0.5))
        assert_that(retry(3), is_(none()))
        assert_that(retry(4), is_(none()))

    def test_single_attempt_never_retries(self):
        assert_that(LinearBackoffRetryStrategy(1, 5)(1), is_(none()))

    def test_invalid_budget(self):
        assert_that(calling(LinearBackoffRetryStrategy).with_args(0), raises(ValueError))

    def test_equality(self):
        assert_that(LinearBackoffRetryStrategy(3, 1), is_(LinearBackoffRetryStrategy(3, 1)))
        assert_that(LinearBackoffRetryStrategy(3, 1) == LinearBackoffRetryStrategy(4, 1), is_(False))
