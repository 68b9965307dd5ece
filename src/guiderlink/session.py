"""
The guider session: one shared, long lived connection to the guider.

Many callers (typically request handlers on different threads) share a session. The
session guarantees:

- at most one connection sequence runs at a time. Callers that ask to connect while a
  sequence is in flight attach to it, and all of them receive the same outcome.
- control commands never wait for or trigger a connection. Without a live client they
  fail immediately with NotConnectedError.
- status queries wait for an in-flight connection sequence before answering, so that a
  poller started together with a connect sees the connected state.

The connection sequence retries with a linear backoff. It runs on a background thread;
connect() simply waits for the shared future.
"""
import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from enum import Enum

from guiderlink.config.config import SessionSettings
from guiderlink.connector.socketconn import GuiderEndpoint
from guiderlink.errors import ConnectCancelledError, ConnectExhaustedError, ConnectorError, GuiderLinkError, \
    NotConnectedError, ProtocolError, ProtocolErrorKind
from guiderlink.guider.client import GuiderClient
from guiderlink.guider.status import GuiderStatus, SettleProgress
from guiderlink.support.cancellation import CancellationToken
from guiderlink.support.events import EventSource
from guiderlink.support.retry_strategy import LinearBackoffRetryStrategy

logger = logging.getLogger(__name__)

# algorithm parameter values are sent rounded to this many decimals, plus VALUE_OFFSET
VALUE_DECIMALS = 3
VALUE_OFFSET = 0.001


class SessionState(Enum):
    NO_CLIENT = 'no_client'
    CONNECT_IN_FLIGHT = 'connect_in_flight'
    CONNECTED = 'connected'


class SessionStateEvent:
    """ fired when the session changes state. """
    def __init__(self, session, previous: SessionState, state: SessionState):
        self.session = session
        self.previous = previous
        self.state = state


class GuiderSession:
    """
    Owns the connection to a guider and gates commands on it.

    :param settings: the SessionSettings. Defaults apply when None.
    :param client_factory: creates a GuiderClient from (host, instance, base_port=, call_timeout=,
        connect_timeout=)
    :param retry_strategy: maps the attempt number to the delay before the next attempt, or None
        when no attempts remain. Defaults to a linear backoff configured from the settings.
    """

    def __init__(self, settings: SessionSettings=None, client_factory=GuiderClient, retry_strategy=None,
                 log=logger):
        self.settings = settings or SessionSettings()
        self.client_factory = client_factory
        self.retry_strategy = retry_strategy or LinearBackoffRetryStrategy(self.settings.max_attempts,
                                                                           self.settings.backoff_step)
        self.logger = log
        self.events = EventSource(log=log)
        self._lock = threading.RLock()
        self._state = SessionState.NO_CLIENT
        self._client = None
        self._endpoint = None
        self._connect_future = None
        self._token = None
        self._last_error = None
        self._attempt_count = 0
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def state(self) -> SessionState:
        with self._lock:
            transition = self._reconcile()
            state = self._state
        self._fire(transition)
        return state

    @property
    def connected(self):
        return self.state is SessionState.CONNECTED

    @property
    def last_error(self):
        """ the message of the most recent failure, or None if the last operation succeeded. """
        with self._lock:
            return self._last_error

    @property
    def attempt_count(self):
        """ the number of connection attempts made by the current (or most recent) connect sequence. """
        with self._lock:
            return self._attempt_count

    @property
    def endpoint(self) -> GuiderEndpoint:
        with self._lock:
            return self._endpoint

    def _reconcile(self):
        """ notices a client that has lost its connection. Call with the lock held. """
        if self._state is SessionState.CONNECTED and not (self._client and self._client.connected):
            self.logger.info("guider connection to %s was lost", self._endpoint.key())
            return self._set_state(SessionState.NO_CLIENT)
        return None

    def _set_state(self, state):
        """ changes the state, returning the event to fire once the lock is released. """
        previous, self._state = self._state, state
        return SessionStateEvent(self, previous, state) if previous is not state else None

    def _fire(self, event):
        if event is not None:
            self.events.fire(event)

    def _record(self, error):
        with self._lock:
            self._last_error = None if error is None else str(error)

    # connection lifecycle

    def connect_async(self, host=None, instance=None, timeout=None) -> Future:
        """
        Starts connecting to the guider, or joins the connection sequence already in flight.
        :param host: the guider host. Defaults to the configured host.
        :param instance: the guider instance number. Defaults to the configured instance.
        :param timeout: a deadline for the whole sequence, in seconds. None waits for the retry budget.
        :return: a Future resolving to True when connected. On failure it raises ConnectExhaustedError,
            or ConnectCancelledError when the sequence was cancelled or the deadline passed.
        """
        sequence = None
        with self._lock:
            if self._closed:
                raise ConnectorError("guider session is closed")
            transition = self._reconcile()
            if self._state is SessionState.CONNECTED:
                future = Future()
                future.set_result(True)
                self.logger.debug("guider already connected, skipping connection attempt")
            elif self._connect_future is not None:
                future = self._connect_future
                self.logger.debug("guider connection already in progress, waiting for existing attempt")
            else:
                endpoint = GuiderEndpoint(host or self.settings.host,
                                          instance if instance is not None else self.settings.instance,
                                          self.settings.base_port)
                future = Future()
                token = CancellationToken.with_timeout(timeout)
                self._connect_future = future
                self._token = token
                self._attempt_count = 0
                transition = self._set_state(SessionState.CONNECT_IN_FLIGHT)
                sequence = threading.Thread(target=self._connect_sequence, args=(endpoint, token, future),
                                            name='guider-connect', daemon=True)
        self._fire(transition)
        if sequence is not None:
            sequence.start()
        return future

    def connect(self, host=None, instance=None, timeout=None):
        """
        Connects to the guider, waiting for the outcome.
        :return: True once connected
        :raises ConnectExhaustedError: when every attempt failed
        :raises ConnectCancelledError: when cancelled or the deadline passed
        """
        return self.connect_async(host, instance, timeout).result()

    def cancel_connect(self):
        """
        Cancels the connection sequence in flight, if any.
        :return: True if a sequence was cancelled
        """
        with self._lock:
            token = self._token
        if token is None:
            return False
        token.cancel()
        return True

    def wait_for_connection(self, timeout=None):
        """
        Waits for the connection sequence in flight, if any, to finish.
        The sequence's failure is not raised here. Callers observe it as the disconnected state.
        :return: True if connected
        """
        with self._lock:
            future = self._connect_future
        if future is not None:
            self.logger.debug("waiting for ongoing guider connection")
            try:
                future.result(timeout)
            except (GuiderLinkError, FutureTimeoutError) as e:
                self.logger.debug("guider connection not established: %s", e)
        return self.connected

    def _connect_sequence(self, endpoint: GuiderEndpoint, token: CancellationToken, future: Future):
        attempt = 0
        cause = None
        cancelled = False
        while True:
            if token.cancelled:
                cancelled = True
                break
            attempt += 1
            with self._lock:
                self._attempt_count = attempt
                previous, self._client = self._client, None
            self._teardown(previous)
            self.logger.info("guider connection attempt %d to %s", attempt, endpoint.key())
            client = self.client_factory(endpoint.hostname, endpoint.instance, base_port=endpoint.base_port,
                                         call_timeout=self.settings.call_timeout,
                                         connect_timeout=self.settings.connect_timeout)
            try:
                client.connect()
                if not client.connected:
                    raise ConnectorError("client reports not connected after connect()")
            except (GuiderLinkError, OSError) as e:
                cause = e
                self._teardown(client)
                self._record("guider connection attempt %d failed: %s" % (attempt, e))
                self.logger.warning("guider connection attempt %d to %s failed: %s", attempt, endpoint.key(), e)
                delay = self.retry_strategy(attempt)
                if delay is None:
                    break
                self.logger.info("retrying guider connection in %s seconds", delay)
                if token.wait(delay):
                    cancelled = True
                    break
                continue

            with self._lock:
                accepted = not token.cancelled
                if accepted:
                    self._client = client
                    self._endpoint = endpoint
                    self._last_error = None
                    self._connect_future = None
                    self._token = None
                    transition = self._set_state(SessionState.CONNECTED)
            if not accepted:
                self._teardown(client)
                cancelled = True
                break
            self.logger.info("guider connection to %s successful on attempt %d", endpoint.key(), attempt)
            self._fire(transition)
            future.set_result(True)
            return

        if cancelled:
            error = ConnectCancelledError("connection to guider at %s cancelled after %d attempts"
                                          % (endpoint.key(), attempt), endpoint.hostname, endpoint.port, attempt,
                                          cause)
            self.logger.info("%s", error)
        else:
            error = ConnectExhaustedError("Failed to connect to guider at %s after %d attempts: %s"
                                          % (endpoint.key(), attempt, cause), endpoint.hostname, endpoint.port,
                                          attempt, cause)
            self.logger.error("all guider connection attempts failed: %s", error)
        with self._lock:
            self._last_error = str(error)
            transition = None
            if self._connect_future is future:
                self._connect_future = None
                self._token = None
                transition = self._set_state(SessionState.NO_CLIENT)
        self._fire(transition)
        future.set_exception(error)

    def _teardown(self, client):
        """ disconnects a client, logging rather than raising any failure. """
        if client is None:
            return
        try:
            client.disconnect()
        except (GuiderLinkError, OSError) as e:
            self.logger.warning("error during graceful guider disconnect: %s", e)

    def disconnect(self):
        """
        Disconnects from the guider and cancels any connection sequence in flight.
        Failures while disconnecting are logged and recorded in last_error.
        """
        self.cancel_connect()
        with self._lock:
            client, self._client = self._client, None
            self._last_error = None
            transition = None
            if self._state is SessionState.CONNECTED:
                transition = self._set_state(SessionState.NO_CLIENT)
        if client is not None:
            try:
                client.disconnect()
            except (GuiderLinkError, OSError) as e:
                self._record(e)
                self.logger.error("error disconnecting from guider: %s", e)
        self._fire(transition)

    def close(self):
        """
        Disconnects and disposes of the session. Calling close() again has no effect.
        A connection attempt in flight is cancelled, and close() waits up to connect_timeout
        for it to finish.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            future = self._connect_future
        self.disconnect()
        if future is not None:
            try:
                future.result(self.settings.connect_timeout + 1)
            except (GuiderLinkError, FutureTimeoutError) as e:
                self.logger.debug("guider connection ended on close: %s", e)

    # command gating

    def _live_client(self) -> GuiderClient:
        with self._lock:
            transition = self._reconcile()
            client = self._client if self._state is SessionState.CONNECTED else None
            if client is None:
                self._last_error = "guider is not connected"
        self._fire(transition)
        if client is None:
            raise NotConnectedError("guider is not connected")
        return client

    def _control(self, description, operation):
        """
        Runs an operation against the live client. Fails fast when there is none.
        Records the outcome in last_error. Benign protocol errors are logged at debug.
        """
        client = self._live_client()
        try:
            result = operation(client)
        except ProtocolError as e:
            self._record(e)
            method = self.logger.debug if e.benign else self.logger.error
            method("failed to %s: %s", description, e)
            raise
        except (GuiderLinkError, OSError) as e:
            self._record(e)
            self.logger.error("failed to %s: %s", description, e)
            raise
        self._record(None)
        return result

    def _query(self, description, operation):
        """ waits for a connection in flight, then runs the operation as a control command. """
        self.wait_for_connection()
        return self._control(description, operation)

    # status and telemetry

    def status(self) -> GuiderStatus:
        """
        Retrieves the guider status. Never raises: without a connection the status reports
        app_state 'Disconnected'.
        """
        self.wait_for_connection()
        with self._lock:
            transition = self._reconcile()
            client = self._client if self._state is SessionState.CONNECTED else None
        self._fire(transition)
        if client is None:
            return GuiderStatus.disconnected()
        status = client.status()
        self._record(None)
        return status

    def pixel_scale(self) -> float:
        """ the guide camera pixel scale in arc-seconds per pixel, 0.0 when the guider does not know it. """
        return self._metadata('get pixel scale', lambda c: c.pixel_scale(), 0.0)

    def focal_length(self) -> int:
        return self._metadata('get focal length', lambda c: c.focal_length(), 0)

    def _metadata(self, description, operation, default):
        try:
            return self._query(description, operation)
        except ProtocolError as e:
            if e.kind is not ProtocolErrorKind.METADATA_UNAVAILABLE:
                raise
            self.logger.debug("%s: %s, using %s", description, e, default)
            return default

    # guiding

    def guide(self, settle_pixels=2.0, settle_time=10.0, settle_timeout=100.0, recalibrate=False):
        self._control('start guiding', lambda c: c.guide(settle_pixels, settle_time, settle_timeout, recalibrate))

    def stop(self):
        self._control('stop guiding', lambda c: c.stop_capture())

    def dither(self, pixels=3.0, settle_pixels=2.0, settle_time=10.0, settle_timeout=100.0, ra_only=False):
        self._control('dither', lambda c: c.dither(pixels, settle_pixels, settle_time, settle_timeout, ra_only))

    def pause(self, full=False):
        self._control('pause guiding', lambda c: c.pause(full))

    def unpause(self):
        self._control('unpause guiding', lambda c: c.unpause())

    def loop(self):
        self._control('start looping', lambda c: c.loop())

    def check_settling(self) -> SettleProgress:
        """ reports settle progress. When no settle is in progress, reports a finished settle. """
        def check(client):
            if not client.is_settling():
                return SettleProgress(done=True)
            return client.check_settling()
        return self._control('check settling', check)

    def find_star(self, roi=None):
        return self._control('find star', lambda c: c.find_star(roi))

    # equipment

    def equipment_profiles(self):
        return self._control('get equipment profiles', lambda c: c.equipment_profiles())

    def connect_equipment(self, profile_name):
        self._control('connect equipment', lambda c: c.connect_equipment(profile_name))

    def disconnect_equipment(self):
        self._control('disconnect equipment', lambda c: c.disconnect_equipment())

    def current_equipment(self):
        return self._control('get current equipment', lambda c: c.current_equipment())

    def current_profile(self):
        return self._control('get profile', lambda c: c.current_profile())

    def get_guider_connected(self):
        """ whether the guider's equipment is connected. """
        return self._control('get connected', lambda c: c.get_connected())

    def get_paused(self):
        return self._control('get paused', lambda c: c.get_paused())

    # parameters

    def set_exposure(self, exposure_ms):
        self._control('set exposure', lambda c: c.set_exposure(exposure_ms))

    def get_exposure(self):
        return self._control('get exposure', lambda c: c.get_exposure())

    def set_dec_guide_mode(self, mode):
        self._control('set dec guide mode', lambda c: c.set_dec_guide_mode(mode))

    def get_dec_guide_mode(self):
        return self._control('get dec guide mode', lambda c: c.get_dec_guide_mode())

    def set_guide_output_enabled(self, enabled):
        self._control('set guide output enabled', lambda c: c.set_guide_output_enabled(enabled))

    def get_guide_output_enabled(self):
        return self._control('get guide output enabled', lambda c: c.get_guide_output_enabled())

    def set_lock_position(self, x, y, exact=True):
        self._control('set lock position', lambda c: c.set_lock_position(x, y, exact))

    def get_lock_position(self):
        return self._control('get lock position', lambda c: c.get_lock_position())

    def set_lock_shift_enabled(self, enabled):
        self._control('set lock shift enabled', lambda c: c.set_lock_shift_enabled(enabled))

    def get_lock_shift_enabled(self):
        return self._control('get lock shift enabled', lambda c: c.get_lock_shift_enabled())

    def set_lock_shift_params(self, x_rate, y_rate, units='arcsec/hr', axes='RA/Dec'):
        self._control('set lock shift params', lambda c: c.set_lock_shift_params(x_rate, y_rate, units, axes))

    def get_lock_shift_params(self):
        return self._control('get lock shift params', lambda c: c.get_lock_shift_params())

    def set_algo_param(self, axis, name, value):
        """
        Sets a guide algorithm parameter, then reads it back.

        The value is rounded to 3 decimals and offset by 0.001 before sending, since the guider
        mis-stores some exact decimal values. A read back that differs from the sent value by
        more than 0.001 is logged as a warning. Read back failures are logged and not raised.
        """
        sent = round(float(value), VALUE_DECIMALS) + VALUE_OFFSET

        def set_and_verify(client):
            self.logger.info("setting guider algorithm parameter %s.%s = %s (requested %r)", axis, name, sent, value)
            client.set_algo_param(axis, name, sent)
            try:
                actual = client.get_algo_param(axis, name)
            except GuiderLinkError as e:
                self.logger.warning("could not read back guider parameter %s.%s: %s", axis, name, e)
                return
            if not isinstance(actual, (int, float)) or abs(actual - sent) > VALUE_OFFSET:
                self.logger.warning("guider parameter %s.%s mismatch: sent %s, read back %s", axis, name, sent, actual)
            else:
                self.logger.info("guider confirmed parameter %s.%s = %s", axis, name, actual)
        self._control('set algorithm parameter', set_and_verify)

    def get_algo_param(self, axis, name):
        return self._control('get algorithm parameter', lambda c: c.get_algo_param(axis, name))

    def get_algo_param_names(self, axis):
        return self._control('get algorithm parameter names', lambda c: c.get_algo_param_names(axis))

    def set_variable_delay_settings(self, enabled, short_delay_seconds, long_delay_seconds):
        self._control('set variable delay settings',
                      lambda c: c.set_variable_delay_settings(enabled, short_delay_seconds, long_delay_seconds))

    def get_variable_delay_settings(self):
        return self._control('get variable delay settings', lambda c: c.get_variable_delay_settings())

    def get_setting(self, name, params=None):
        return self._control('get ' + name, lambda c: c.get_setting(name, params))

    def set_setting(self, name, value):
        self._control('set ' + name, lambda c: c.set_setting(name, value))

    # images

    def save_image(self):
        return self._control('save image', lambda c: c.save_image())

    def star_image(self, size=None):
        return self._control('get star image', lambda c: c.star_image(size))
