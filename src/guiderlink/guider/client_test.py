import json
import socket
import threading
import time
import unittest
from unittest.mock import Mock

import timeout_decorator
from hamcrest import assert_that, calling, contains_exactly, has_entries, has_properties, is_, none, raises

from guiderlink.errors import NotConnectedError, ProtocolError, ProtocolErrorKind
from guiderlink.guider.client import GuiderClient, check_axis
from guiderlink.protocol.background_test import debug_timeout


class FakeGuiderServer:
    """
    A loopback TCP server speaking the guider protocol.

    results maps a method name to its result, or to a callable that receives the params
    and returns the result. A result that is an Exception is sent as a JSON-RPC error.
    Methods without a result are answered with "method not found".
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []
        self.connections = []
        self._lock = threading.Lock()
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(('127.0.0.1', 0))
        self.server.listen(5)
        self.port = self.server.getsockname()[1]
        self._accepting = threading.Thread(target=self._accept, daemon=True)
        self._accepting.start()

    def client(self, **kwargs):
        return GuiderClient('127.0.0.1', 1, base_port=self.port, **kwargs)

    def methods(self):
        with self._lock:
            return [c[0] for c in self.calls]

    def _accept(self):
        while True:
            try:
                sock, _ = self.server.accept()
            except OSError:
                return
            with self._lock:
                self.connections.append(sock)
            threading.Thread(target=self._serve, args=(sock,), daemon=True).start()

    def _serve(self, sock):
        try:
            sock.sendall(b'{"Event": "Version", "PHDVersion": "2.6.13", "PHDSubver": "", "MsgVersion": 1}\r\n')
            for line in sock.makefile('rb'):
                request = json.loads(line)
                self._answer(sock, request)
        except OSError:
            pass

    def _answer(self, sock, request):
        method = request['method']
        params = request.get('params')
        with self._lock:
            self.calls.append((method, params))
        if method not in self.results:
            reply = {'jsonrpc': '2.0', 'error': {'code': -32601, 'message': 'method not found'}}
        else:
            result = self.results[method]
            if callable(result):
                result = result(params)
            if isinstance(result, Exception):
                reply = {'jsonrpc': '2.0', 'error': {'code': 1, 'message': str(result)}}
            else:
                reply = {'jsonrpc': '2.0', 'result': result}
        reply['id'] = request['id']
        sock.sendall((json.dumps(reply) + '\r\n').encode())

    def send_event(self, name, **attributes):
        attributes['Event'] = name
        data = (json.dumps(attributes) + '\r\n').encode()
        with self._lock:
            connections = list(self.connections)
        for sock in connections:
            sock.sendall(data)

    def drop_connections(self):
        with self._lock:
            connections, self.connections = self.connections, []
        for sock in connections:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def close(self):
        self.server.close()
        self.drop_connections()


def wait_until(predicate, timeout=5):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within %s seconds" % timeout)
        time.sleep(0.01)


PROFILES = [{'id': 1, 'name': 'Simulator'}, {'id': 3, 'name': 'Backyard'}]


class CheckAxisTest(unittest.TestCase):

    def test_axes_are_lowercased(self):
        assert_that(check_axis('Dec'), is_('dec'))
        assert_that(check_axis('X'), is_('x'))

    def test_invalid_axis(self):
        try:
            check_axis('z', 'set_algo_param')
            self.fail("expected a ProtocolError")
        except ProtocolError as e:
            assert_that(e, has_properties(kind=ProtocolErrorKind.INVALID_AXIS, method='set_algo_param'))


class DisconnectedClientTest(unittest.TestCase):

    def test_calls_fail_without_connection(self):
        connector = Mock()
        sut = GuiderClient(connector=connector)
        assert_that(sut.connected, is_(False))
        assert_that(calling(sut.loop), raises(NotConnectedError))
        assert_that(calling(sut.check_settling), raises(NotConnectedError))
        assert_that(connector.connect.called, is_(False))

    def test_invalid_arguments_are_rejected_before_sending(self):
        sut = GuiderClient(connector=Mock())
        assert_that(calling(sut.get_algo_param).with_args('z', 'MinMove'), raises(ProtocolError, 'Invalid axis'))
        assert_that(calling(sut.set_dec_guide_mode).with_args('East'), raises(ProtocolError))
        assert_that(calling(sut.set_lock_shift_params).with_args(1, 2, 'deg/hr'), raises(ProtocolError))
        assert_that(calling(sut.find_star).with_args([1, 2]), raises(ProtocolError))

    def test_endpoint(self):
        sut = GuiderClient('scope', 2, connector=Mock())
        assert_that(sut.endpoint.key(), is_('scope:4401'))


class GuiderClientTest(unittest.TestCase):

    def setUp(self):
        self.server = FakeGuiderServer({
            'get_profiles': PROFILES,
            'stop_capture': 0,
            'set_connected': 0,
            'set_profile': 0,
            'guide': 0,
            'dither': 0,
            'loop': 0,
            'set_paused': 0,
            'get_paused': True,
            'get_settling': False,
            'get_exposure': 2000,
            'set_exposure': 0,
            'get_pixel_scale': None,
            'get_focal_length': 480,
            'get_lock_position': [512.25, 384.0],
            'find_star': [100.5, 200.0],
            'set_lock_shift_params': 0,
            'set_algo_param': 0,
            'get_algo_param': 0.151,
            'get_algo_param_names': ['algorithmName', 'minMove'],
            'set_variable_delay_settings': 0,
            'get_current_equipment': {'camera': {'name': 'Simulator', 'connected': True},
                                      'mount': {'name': 'On Camera'}, 'AuxMount': None},
            'get_profile': {'id': 3, 'name': 'Backyard'},
            'save_image': {'filename': '/tmp/phd2_save.fit'},
            'get_star_image': lambda params: {'frame': 4, 'width': params[0], 'height': params[0],
                                              'star_pos': [7.5, 7.5], 'pixels': 'AAAA'},
            'get_calibration_step': 1200,
        })
        self.sut = self.server.client(call_timeout=5)
        self.sut.connect()

    def tearDown(self):
        self.sut.close()
        self.server.close()

    @timeout_decorator.timeout(debug_timeout(10))
    def test_version_event_is_tracked(self):
        wait_until(lambda: self.sut.status().version == '2.6.13')
        assert_that(self.sut.status(), has_properties(connected=True, app_state='Stopped'))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_guide_sends_settle_parameters(self):
        self.sut.guide(1.5, 10, 60)
        self.sut.dither(5, 1.5, 10, 60, ra_only=True)
        assert_that(self.server.calls, contains_exactly(
            ('guide', [{'pixels': 1.5, 'time': 10, 'timeout': 60}, False]),
            ('dither', [5, True, {'pixels': 1.5, 'time': 10, 'timeout': 60}])))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_settle_progress_from_events(self):
        self.sut.guide(2.0, 10, 60)
        self.server.send_event('Settling', Distance=4.5, Time=1.0, SettleTime=10.0, StarLocked=True)
        wait_until(lambda: self.sut.is_settling())
        wait_until(lambda: self.sut.check_settling().distance == 4.5)
        assert_that(self.sut.check_settling(), has_properties(done=False, settle_px=2.0))
        self.server.send_event('SettleDone', Status=0, TotalFrames=5, DroppedFrames=0)
        wait_until(lambda: self.sut.status().settle_progress.done)
        assert_that(self.sut.check_settling(), has_properties(done=True, status=0))
        assert_that(calling(self.sut.check_settling), raises(ProtocolError, 'Not settling'))
        assert_that(self.sut.is_settling(), is_(False))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_connect_equipment(self):
        self.sut.connect_equipment('Backyard')
        assert_that(self.server.calls[1:], contains_exactly(
            ('stop_capture', None), ('set_connected', [False]), ('set_profile', [3]), ('set_connected', [True])))
        assert_that(self.sut.equipment_profiles(), is_(['Simulator', 'Backyard']))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_connect_unknown_equipment(self):
        assert_that(calling(self.sut.connect_equipment).with_args('Observatory'),
                    raises(ProtocolError, 'Invalid guider profile name'))
        assert_that(self.server.methods(), is_(['get_profiles']))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_pause(self):
        self.sut.pause(full=True)
        self.sut.unpause()
        assert_that(self.server.calls, contains_exactly(('set_paused', [True, 'full']), ('set_paused', [False])))
        assert_that(self.sut.get_paused(), is_(True))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_null_metadata_is_unavailable(self):
        try:
            self.sut.pixel_scale()
            self.fail("expected a ProtocolError")
        except ProtocolError as e:
            assert_that(e.kind, is_(ProtocolErrorKind.METADATA_UNAVAILABLE))
        assert_that(self.sut.focal_length(), is_(480))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_null_setting_is_a_remote_error(self):
        self.server.results.update({'get_exposure': None, 'get_algo_param': None, 'get_algo_param_names': None})
        for call, method in ((self.sut.get_exposure, 'get_exposure'),
                             (lambda: self.sut.get_algo_param('ra', 'minMove'), 'get_algo_param'),
                             (lambda: self.sut.get_algo_param_names('dec'), 'get_algo_param_names')):
            try:
                call()
                self.fail("expected a ProtocolError")
            except ProtocolError as e:
                assert_that(e.kind, is_(ProtocolErrorKind.REMOTE))
                assert_that(e.method, is_(method))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_unsupported_method(self):
        try:
            self.sut.get_setting('cooler_status')
            self.fail("expected a ProtocolError")
        except ProtocolError as e:
            assert_that(e.kind, is_(ProtocolErrorKind.UNSUPPORTED_METHOD))
            assert_that(e.method, is_('get_cooler_status'))
        assert_that(self.sut.get_setting('calibration_step'), is_(1200))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_settings(self):
        self.sut.set_exposure(1500)
        self.sut.set_lock_shift_params(1.0, -2.0, 'pixels/hr', 'X/Y')
        self.sut.set_variable_delay_settings(True, 2, 10)
        self.sut.set_algo_param('RA', 'MinMove', 0.151)
        assert_that(self.server.calls, contains_exactly(
            ('set_exposure', [1500]),
            ('set_lock_shift_params', {'rate': [1.0, -2.0], 'units': 'pixels/hr', 'axes': 'X/Y'}),
            ('set_variable_delay_settings', {'Enabled': True, 'ShortDelaySeconds': 2, 'LongDelaySeconds': 10}),
            ('set_algo_param', ['ra', 'MinMove', 0.151])))
        assert_that(self.sut.get_exposure(), is_(2000))
        assert_that(self.sut.get_algo_param('dec', 'MinMove'), is_(0.151))
        assert_that(self.sut.get_algo_param_names('ra'), is_(['algorithmName', 'minMove']))
        assert_that(self.sut.get_lock_position(), is_((512.25, 384.0)))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_find_star(self):
        assert_that(self.sut.find_star([10, 20, 300, 400]), is_((100.5, 200.0)))
        assert_that(self.server.calls[-1], is_(('find_star', {'roi': [10, 20, 300, 400]})))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_current_equipment(self):
        assert_that(self.sut.current_equipment(), is_({
            'camera': {'name': 'Simulator', 'connected': True},
            'mount': {'name': 'On Camera', 'connected': True},
            'auxmount': {'name': '', 'connected': False}}))
        assert_that(self.sut.current_profile(), is_({'id': 3, 'name': 'Backyard'}))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_images(self):
        assert_that(self.sut.save_image(), is_('/tmp/phd2_save.fit'))
        image = self.sut.star_image(5)
        assert_that(image, has_properties(width=15, star_pos=(7.5, 7.5)))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_remote_disconnect_fails_calls(self):
        wait_until(lambda: len(self.server.connections) == 1)
        self.server.drop_connections()
        wait_until(lambda: not self.sut.connected)
        assert_that(calling(self.sut.loop), raises(NotConnectedError))
        assert_that(self.sut.status().connected, is_(False))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_reconnect(self):
        self.sut.disconnect()
        assert_that(self.sut.connected, is_(False))
        self.sut.connect()
        self.sut.loop()
        assert_that(self.server.methods(), is_(['loop']))


class LegacyEquipmentTest(unittest.TestCase):

    def test_list_form(self):
        sut = GuiderClient(connector=Mock())
        sut.call = Mock(return_value=[['Camera', 'ZWO ASI120'], ['Mount', ''], ['bad']])
        assert_that(sut.current_equipment(), has_entries(
            camera={'name': 'ZWO ASI120', 'connected': True}, mount={'name': '', 'connected': False}))

    def test_profile_as_string(self):
        sut = GuiderClient(connector=Mock())
        sut.call = Mock(return_value='{"id": 2, "name": "Rooftop"}')
        assert_that(sut.current_profile(), is_({'id': 2, 'name': 'Rooftop'}))
        sut.call = Mock(return_value='Rooftop')
        assert_that(sut.current_profile(), is_({'name': 'Rooftop'}))

    def test_lock_position_absent(self):
        sut = GuiderClient(connector=Mock())
        sut.call = Mock(return_value=None)
        assert_that(sut.get_lock_position(), is_(none()))


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
