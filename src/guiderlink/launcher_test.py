import os
import subprocess
import tempfile
from unittest import TestCase
from unittest.mock import Mock, PropertyMock, patch

import psutil
from hamcrest import assert_that, calling, is_, raises

from guiderlink.errors import NotFoundError
from guiderlink.launcher import ProfileInjector, guider_running, process_name


def process(name):
    proc = Mock()
    proc.info = {'pid': 1234, 'name': name}
    return proc


class GuiderRunningTest(TestCase):

    def test_process_name(self):
        assert_that(process_name('PHD2.exe'), is_('phd2'))
        assert_that(process_name('phd2.bin'), is_('phd2.bin'))
        assert_that(process_name(None), is_(''))

    @patch('guiderlink.launcher.psutil.process_iter')
    def test_running(self, process_iter):
        process_iter.return_value = [process('bash'), process('PHD2')]
        assert_that(guider_running(), is_(True))

    @patch('guiderlink.launcher.psutil.process_iter')
    def test_running_linux_binary(self, process_iter):
        process_iter.return_value = [process('phd2.bin')]
        assert_that(guider_running(), is_(True))

    @patch('guiderlink.launcher.psutil.process_iter')
    def test_not_running(self, process_iter):
        process_iter.return_value = [process('bash'), process('phd2-helper')]
        assert_that(guider_running(), is_(False))

    @patch('guiderlink.launcher.psutil.process_iter')
    def test_vanished_process_skipped(self, process_iter):
        vanished = Mock()
        type(vanished).info = PropertyMock(side_effect=psutil.NoSuchProcess(99))
        process_iter.return_value = [vanished, process('phd2')]
        assert_that(guider_running(), is_(True))


@patch('guiderlink.launcher.guider_running', return_value=False)
@patch('guiderlink.launcher.subprocess.Popen')
class ProfileInjectorTest(TestCase):

    def setUp(self):
        fd, self.executable = tempfile.mkstemp(prefix='phd2')
        os.close(fd)
        self.log = Mock()

    def tearDown(self):
        os.remove(self.executable)

    def test_runs_guider_with_profile_file(self, popen, running):
        popen.return_value.wait.return_value = 0
        sut = ProfileInjector(log=self.log)
        assert_that(sut.inject(self.executable, '/tmp/profiles.phd'), is_(True))
        args = popen.call_args[0][0]
        assert_that(args, is_([self.executable, '-l=/tmp/profiles.phd']))
        popen.return_value.wait.assert_called_once_with(timeout=5)

    def test_nonzero_exit(self, popen, running):
        popen.return_value.wait.return_value = 2
        assert_that(ProfileInjector(log=self.log).inject(self.executable, 'p.phd'), is_(False))

    def test_timeout_kills_guider(self, popen, running):
        guider = popen.return_value
        guider.wait.side_effect = [subprocess.TimeoutExpired('phd2', 1), -9]
        assert_that(ProfileInjector(log=self.log).inject(self.executable, 'p.phd', timeout=1), is_(False))
        guider.kill.assert_called_once_with()

    def test_refused_while_connected(self, popen, running):
        session = Mock(connected=True)
        assert_that(ProfileInjector(session, log=self.log).inject(self.executable, 'p.phd'), is_(False))
        popen.assert_not_called()

    def test_allowed_while_session_disconnected(self, popen, running):
        popen.return_value.wait.return_value = 0
        session = Mock(connected=False)
        assert_that(ProfileInjector(session, log=self.log).inject(self.executable, 'p.phd'), is_(True))

    def test_refused_while_guider_running(self, popen, running):
        running.return_value = True
        assert_that(ProfileInjector(log=self.log).inject(self.executable, 'p.phd'), is_(False))
        popen.assert_not_called()

    def test_missing_executable(self, popen, running):
        sut = ProfileInjector(log=self.log)
        missing = self.executable + '.missing'
        assert_that(calling(sut.inject).with_args(missing, 'p.phd'), raises(NotFoundError))
        popen.assert_not_called()

    def test_start_failure(self, popen, running):
        popen.side_effect = PermissionError(13, 'Permission denied')
        assert_that(ProfileInjector(log=self.log).inject(self.executable, 'p.phd'), is_(False))
