"""
Loads a profile file into the guider by running the guider binary with the file to import.

The guider imports profiles only at startup, so the injection is refused while a session
is connected to a guider or a guider process is running.
"""
import logging
import os
import subprocess

import psutil

from guiderlink.errors import NotFoundError

logger = logging.getLogger(__name__)

GUIDER_PROCESS_NAMES = ('phd2', 'phd2.bin')


def process_name(name):
    """
    >>> process_name('PHD2.exe'), process_name('phd2.bin')
    ('phd2', 'phd2.bin')
    """
    name = (name or '').lower()
    if name.endswith('.exe'):
        name = name[:-len('.exe')]
    return name


def guider_running(names=GUIDER_PROCESS_NAMES):
    """ determines if a process with one of the given names is running. """
    for proc in psutil.process_iter(['pid', 'name']):
        try:
            if process_name(proc.info.get('name')) in names:
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return False


class ProfileInjector:
    """
    :param session: the GuiderSession that must not be connected while profiles are injected. Optional.
    """

    def __init__(self, session=None, log=logger):
        self.session = session
        self.logger = log

    def inject(self, executable, profile_file, timeout=5):
        """
        Runs the guider once to import a profile file.
        :param executable: the path of the guider binary
        :param profile_file: the profile file to import
        :param timeout: seconds to wait for the guider to exit
        :return: True if the guider exited with status 0 within the timeout. False if a session
            is connected, a guider is already running, or the import did not complete.
        :raises NotFoundError: if there is no file at executable
        """
        if self.session is not None and self.session.connected:
            self.logger.warning("cannot inject guider profiles while a session is connected")
            return False
        if guider_running():
            self.logger.error("cannot inject guider profiles: the guider is already running")
            return False
        if not os.path.isfile(executable):
            self.logger.error("guider executable not found at %s", executable)
            raise NotFoundError("guider executable not found: %s" % executable)

        args = [executable, '-l=' + profile_file]
        self.logger.info("injecting guider profiles: %s", ' '.join(args))
        try:
            process = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            self.logger.error("error starting guider %s: %s", executable, e)
            return False
        try:
            code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.error("guider did not exit within %s seconds, killing it", timeout)
            process.kill()
            process.wait()
            return False
        if code != 0:
            self.logger.error("guider profile import exited with status %d", code)
        return code == 0
