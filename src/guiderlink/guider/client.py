"""
A client for one guider instance.

GuiderClient binds a SocketConnector to the guider's endpoint, runs the JSON-RPC protocol
over the resulting conduit, and tracks the guider's event stream. Each method maps to one
guider call (or a short fixed sequence of calls), validates its arguments locally and
shapes the result into python values.

The client does not reconnect by itself. GuiderSession owns the connection lifecycle.
"""
import json
import logging

from guiderlink.connector.base import Connector
from guiderlink.connector.socketconn import DEFAULT_BASE_PORT, GuiderEndpoint, SocketConnector
from guiderlink.errors import NotConnectedError, ProtocolError, ProtocolErrorKind
from guiderlink.guider.status import GuiderEventTracker, GuiderStatus, SettleProgress, StarImage
from guiderlink.protocol.jsonrpc import JsonRpcProtocolHandler

logger = logging.getLogger(__name__)

AXES = ('ra', 'x', 'dec', 'y')
DEC_GUIDE_MODES = ('Off', 'Auto', 'North', 'South')
LOCK_SHIFT_UNITS = ('arcsec/hr', 'pixels/hr')
LOCK_SHIFT_AXES = ('RA/Dec', 'X/Y')
MIN_STAR_IMAGE_SIZE = 15


def settle_params(pixels, time, timeout):
    return {'pixels': pixels, 'time': time, 'timeout': timeout}


def _invalid(message, method=None):
    return ProtocolError(ProtocolErrorKind.INVALID_PARAMETER, message, method=method)


def check_axis(axis, method=None):
    """
    Normalizes an axis name.
    >>> check_axis('RA')
    'ra'
    """
    value = str(axis).lower()
    if value not in AXES:
        raise ProtocolError(ProtocolErrorKind.INVALID_AXIS,
                            "Invalid axis: %s. Valid axes are: %s" % (axis, ', '.join(AXES)), method=method)
    return value


class GuiderClient:
    """
    Connects to and controls a guider.

    :param host: the host running the guider
    :param instance: the guider instance number, from 1
    :param call_timeout: how long to wait for each call to be answered, in seconds
    :param connect_timeout: how long to wait for the connection to be accepted, in seconds
    :param connector: the connector to use. Defaults to a socket connector for the endpoint.
    """

    def __init__(self, host='localhost', instance=1, base_port=DEFAULT_BASE_PORT, call_timeout=10,
                 connect_timeout=5, connector: Connector=None, log=logger):
        self.endpoint = GuiderEndpoint(host, instance, base_port)
        self.call_timeout = call_timeout
        self.connector = connector or SocketConnector(self.endpoint, connect_timeout, log=log)
        self.logger = log
        self.tracker = GuiderEventTracker(log=log)
        self._handler = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connected(self):
        handler = self._handler
        return handler is not None and handler.open

    def connect(self):
        """
        Opens the connection and starts reading the guider's responses and events.
        :raises ConnectorError: if the guider cannot be reached
        """
        if self.connected:
            return
        if self._handler is not None:
            self.disconnect()
        self.connector.connect()
        handler = JsonRpcProtocolHandler(self.connector.conduit, self.call_timeout, log=self.logger)
        handler.events.add(self.tracker)
        handler.disconnected.add(self._connection_lost)
        self._handler = handler
        handler.start_background_thread()
        self.logger.info("connected to guider at %s", self.endpoint.key())

    def disconnect(self):
        handler, self._handler = self._handler, None
        try:
            if handler is not None:
                handler.shutdown()
        finally:
            self.connector.disconnect()
        self.tracker.clear_settle()

    close = disconnect

    def _connection_lost(self, reason):
        self.logger.debug("guider at %s went away: %s", self.endpoint.key(), reason)

    def check_connected(self):
        if not self.connected:
            raise NotConnectedError("guider server at %s disconnected" % self.endpoint.key())

    def call(self, method, params=None, timeout=None):
        """
        Calls a guider method and returns its result.
        :raises NotConnectedError: if the client is not connected
        :raises ProtocolError: if the call fails
        """
        self.check_connected()
        return self._handler.call(method, params, timeout)

    def status(self) -> GuiderStatus:
        return self.tracker.snapshot(self.connected)

    # guiding

    def guide(self, settle_pixels, settle_time, settle_timeout, recalibrate=False):
        self._settle_call('guide', [settle_params(settle_pixels, settle_time, settle_timeout), recalibrate],
                          settle_pixels)

    def dither(self, pixels, settle_pixels, settle_time, settle_timeout, ra_only=False):
        self._settle_call('dither', [pixels, ra_only, settle_params(settle_pixels, settle_time, settle_timeout)],
                          settle_pixels)

    def _settle_call(self, method, params, settle_pixels):
        try:
            self.call(method, params)
        except ProtocolError:
            self.tracker.clear_settle()
            raise
        self.tracker.settle_started(settle_pixels)

    def is_settling(self):
        if self.tracker.settling:
            return True
        settling = bool(self.call('get_settling'))
        if settling:
            self.tracker.begin_settling()
        return settling

    def check_settling(self) -> SettleProgress:
        """
        Reports settle progress. A completed settle is reported once.
        :raises ProtocolError: INVALID_PARAMETER if no settle is in progress
        """
        self.check_connected()
        progress = self.tracker.take_settle_progress()
        if progress is None:
            raise _invalid("Not settling", 'check_settling')
        return progress

    def stop_capture(self):
        self.call('stop_capture')

    def loop(self):
        self.call('loop')

    def pause(self, full=False):
        self.set_paused(True, full)

    def unpause(self):
        self.set_paused(False)

    def set_paused(self, paused, full=False):
        self.call('set_paused', [paused, 'full'] if full else [paused])

    def get_paused(self) -> bool:
        return bool(self.call('get_paused'))

    # equipment

    def equipment_profiles(self):
        return [profile['name'] for profile in self.call('get_profiles') or []]

    def connect_equipment(self, profile_name):
        """ switches the guider to the named equipment profile and connects its equipment. """
        profiles = self.call('get_profiles') or []
        ids = [p['id'] for p in profiles if p.get('name') == profile_name]
        if not ids:
            raise _invalid("Invalid guider profile name: %s" % profile_name, 'set_profile')
        self.stop_capture()
        self.call('set_connected', False)
        self.call('set_profile', ids[0])
        self.call('set_connected', True)

    def disconnect_equipment(self):
        self.stop_capture()
        self.call('set_connected', False)

    def set_connected(self, connected):
        self.call('set_connected', connected)

    def get_connected(self) -> bool:
        return bool(self.call('get_connected'))

    def set_profile(self, profile_id):
        self.call('set_profile', profile_id)

    def current_equipment(self) -> dict:
        """
        Retrieves the guider's equipment as {device type: {'name': ..., 'connected': ...}}.
        Older guiders report a list of [type, name] pairs, which is converted to the same form.
        """
        result = self.call('get_current_equipment')
        equipment = {}
        if isinstance(result, dict):
            for device, info in result.items():
                if isinstance(info, dict):
                    name = info.get('name')
                    connected = info.get('connected')
                    if connected is None:
                        connected = bool(name)
                    equipment[device.lower()] = {'name': name, 'connected': bool(connected)}
                else:
                    name = '' if info is None else str(info)
                    equipment[device.lower()] = {'name': name, 'connected': bool(name)}
        elif isinstance(result, list):
            for item in result:
                if isinstance(item, (list, tuple)) and len(item) >= 2:
                    name = str(item[1])
                    equipment[str(item[0]).lower()] = {'name': name, 'connected': bool(name)}
        else:
            self.logger.debug("unknown equipment format from guider: %r", result)
        return equipment

    def current_profile(self) -> dict:
        result = self.call('get_profile')
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except ValueError:
                return {'name': result}
        if isinstance(result, dict):
            return {'id': int(result.get('id') or 0), 'name': str(result.get('name') or '')}
        return {'name': str(result)}

    # metadata

    def pixel_scale(self) -> float:
        """
        :raises ProtocolError: METADATA_UNAVAILABLE when the guider has no pixel scale
            (no camera connected, or focal length not set)
        """
        return float(self._metadata('get_pixel_scale', "Pixel scale not available"))

    def focal_length(self) -> int:
        return int(self._metadata('get_focal_length', "Focal length not available"))

    def _metadata(self, method, message):
        result = self.call(method)
        if result is None:
            raise ProtocolError(ProtocolErrorKind.METADATA_UNAVAILABLE, message, method=method)
        return result

    def _result(self, method, params=None):
        """ calls a method whose result must not be null. """
        result = self.call(method, params)
        if result is None:
            raise ProtocolError(ProtocolErrorKind.REMOTE, "%s returned no value" % method, method=method)
        return result

    # settings

    def set_exposure(self, exposure_ms):
        self.call('set_exposure', int(exposure_ms))

    def get_exposure(self) -> int:
        return int(self._result('get_exposure'))

    def set_dec_guide_mode(self, mode):
        if mode not in DEC_GUIDE_MODES:
            raise _invalid("Invalid Dec guide mode: %s. Valid modes are: %s" % (mode, ', '.join(DEC_GUIDE_MODES)),
                           'set_dec_guide_mode')
        self.call('set_dec_guide_mode', mode)

    def get_dec_guide_mode(self) -> str:
        return self.call('get_dec_guide_mode')

    def set_guide_output_enabled(self, enabled):
        self.call('set_guide_output_enabled', bool(enabled))

    def get_guide_output_enabled(self) -> bool:
        return bool(self.call('get_guide_output_enabled'))

    def set_lock_position(self, x, y, exact=True):
        self.call('set_lock_position', [x, y, exact])

    def get_lock_position(self):
        """ :return: the (x, y) lock position, or None if there is none. """
        pos = self.call('get_lock_position')
        if pos is None:
            return None
        return float(pos[0]), float(pos[1])

    def find_star(self, roi=None):
        """
        Auto-selects a guide star, optionally within a region of interest.
        :param roi: [x, y, width, height], or None for the full frame
        :return: the (x, y) lock position of the selected star
        """
        if roi is not None:
            if len(roi) != 4:
                raise _invalid("ROI must be 4 integers: [x, y, width, height]", 'find_star')
            pos = self.call('find_star', {'roi': [int(v) for v in roi]})
        else:
            pos = self.call('find_star')
        if not isinstance(pos, list) or len(pos) != 2:
            raise ProtocolError(ProtocolErrorKind.REMOTE, "find_star did not return valid coordinates",
                                method='find_star')
        return float(pos[0]), float(pos[1])

    def set_lock_shift_enabled(self, enabled):
        self.call('set_lock_shift_enabled', bool(enabled))

    def get_lock_shift_enabled(self) -> bool:
        return bool(self.call('get_lock_shift_enabled'))

    def set_lock_shift_params(self, x_rate, y_rate, units='arcsec/hr', axes='RA/Dec'):
        if units not in LOCK_SHIFT_UNITS:
            raise _invalid("Invalid units: %s. Valid units are: %s" % (units, ', '.join(LOCK_SHIFT_UNITS)),
                           'set_lock_shift_params')
        if axes not in LOCK_SHIFT_AXES:
            raise _invalid("Invalid axes: %s. Valid axes are: %s" % (axes, ', '.join(LOCK_SHIFT_AXES)),
                           'set_lock_shift_params')
        self.call('set_lock_shift_params', {'rate': [x_rate, y_rate], 'units': units, 'axes': axes})

    def get_lock_shift_params(self) -> dict:
        return self.call('get_lock_shift_params')

    def set_algo_param(self, axis, name, value):
        axis = check_axis(axis, 'set_algo_param')
        self.call('set_algo_param', [axis, name, value])

    def get_algo_param(self, axis, name) -> float:
        axis = check_axis(axis, 'get_algo_param')
        return float(self._result('get_algo_param', [axis, name]))

    def get_algo_param_names(self, axis):
        axis = check_axis(axis, 'get_algo_param_names')
        return list(self._result('get_algo_param_names', axis))

    def set_variable_delay_settings(self, enabled, short_delay_seconds, long_delay_seconds):
        self.call('set_variable_delay_settings', {'Enabled': bool(enabled),
                                                  'ShortDelaySeconds': int(short_delay_seconds),
                                                  'LongDelaySeconds': int(long_delay_seconds)})

    def get_variable_delay_settings(self) -> dict:
        return self.call('get_variable_delay_settings')

    def get_setting(self, name, params=None):
        """ calls get_<name>, for guider settings without a dedicated method. """
        return self.call('get_' + name, params)

    def set_setting(self, name, value):
        """ calls set_<name> with the given value. """
        self.call('set_' + name, value)

    # images

    def save_image(self) -> str:
        """ saves the current guide frame as a FITS file, returning its path on the guider host. """
        result = self.call('save_image')
        filename = result.get('filename') if isinstance(result, dict) else None
        if not filename:
            raise ProtocolError(ProtocolErrorKind.REMOTE, "save_image did not return a valid filename",
                                method='save_image')
        return filename

    def star_image(self, size=None) -> StarImage:
        if size is None:
            result = self.call('get_star_image')
        else:
            result = self.call('get_star_image', max(MIN_STAR_IMAGE_SIZE, int(size)))
        if not isinstance(result, dict):
            raise ProtocolError(ProtocolErrorKind.NO_IMAGE_AVAILABLE, "get_star_image returned no image",
                                method='get_star_image')
        return StarImage.from_result(result)
