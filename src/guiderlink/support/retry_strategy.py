from guiderlink.support.mixins import ValueObject


class RetryStrategy:
    """
    Decides how long to wait after a failed attempt.
    Called with the 1-based number of the attempt that just failed, returns the delay in seconds
    before the next attempt, or None when no further attempts should be made.
    """
    def __call__(self, attempt):
        return 0


class LinearBackoffRetryStrategy(RetryStrategy, ValueObject):

    def __init__(self, max_attempts=10, step=1.0):
        """
        :param max_attempts: the total number of attempts allowed, including the first.
        :param step: the delay after the first failed attempt, in seconds. The delay after
            attempt n is n * step.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1, not %s" % max_attempts)
        self.max_attempts = max_attempts
        self.step = step

    def __call__(self, attempt):
        """
        >>> LinearBackoffRetryStrategy(3, 0.5)(1)
        0.5
        >>> LinearBackoffRetryStrategy(3, 0.5)(3) is None
        True
        """
        if attempt >= self.max_attempts:
            return None
        return attempt * self.step
