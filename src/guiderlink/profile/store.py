"""
Reads and edits the guider's equipment profile file.

The file is plain text. The first line is a header, every other line is a setting of four
tab separated fields:

    PHD Config 1
    /profile/2/camera/binning	1	1	2
    /profile/2/scope/CalibrationDistance	1	1	25

The fields are the setting path, a scope (1 for local settings), a type tag and the value.
Every setting of profile n lives below /profile/n/.

The guider reads the file only at startup, so these edits work whether or not the guider
is running. Updates rewrite the whole file through a temporary file, and every
read-modify-write cycle on a file is serialized by a lock shared by all stores for that path.
"""
import logging
import os
import re
import tempfile
import threading

from guiderlink.errors import InvalidArgumentError, NotFoundError, ProfileNotFoundError
from guiderlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)

HEADER = 'PHD Config 1'
HEADER_PREFIX = 'PHD Config'
CURRENT_PROFILE = '/currentProfile'

_profile_number = re.compile(r'/profile/(\d+)/')
_integer = re.compile(r'^[-+]?\d+$')
_decimal = re.compile(r'^[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$')
_forbidden = re.compile(r'[\t\r\n]')

_locks = {}
_locks_lock = threading.Lock()


def lock_for(path) -> threading.Lock:
    """ retrieves the lock that serializes updates to the file at path. """
    key = os.path.normcase(os.path.abspath(path))
    with _locks_lock:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


def profile_marker(number):
    """
    >>> profile_marker(2)
    '/profile/2/'
    """
    return '/profile/%d/' % number


def default_profile_settings(number, name=None):
    """ the settings of a new profile created without a template. """
    prefix = profile_marker(number)
    return [(prefix + path, value) for path, value in (
        ('name', name or 'Profile %d' % number),
        ('camera/binning', '1'),
        ('camera/pixelsize', '1.5'),
        ('camera/TimeoutMs', '15000'),
        ('guider/StarMinSNR', '6'),
        ('guider/StarMaxHFD', '10'),
        ('guider/FastRecenter', '1'),
        ('scope/CalibrationDistance', '25'),
        ('scope/MaxRaDuration', '2500'),
        ('scope/MaxDecDuration', '2500'),
        ('ExposureDurationMs', '1000'),
    )]


def check_field(description, text):
    """
    Ensures text can be written as one field of a setting line.
    :raises InvalidArgumentError: if text contains a tab or a line break
    """
    if _forbidden.search(text):
        raise InvalidArgumentError("%s must not contain tabs or line breaks: %r" % (description, text))
    return text


def typed_value(value):
    """
    Converts a setting value to the python type it represents.
    >>> typed_value('1'), typed_value('0'), typed_value('2500'), typed_value('1.5'), typed_value('ZWO')
    (True, False, 2500, 1.5, 'ZWO')
    """
    if value in ('0', '1'):
        return value == '1'
    if _integer.match(value):
        return int(value)
    if _decimal.match(value):
        return float(value)
    return value


class ProfileSetting(ValueObject):
    """ One setting line. scope and type_tag keep their text form so unchanged lines are rewritten verbatim. """

    def __init__(self, path, scope='1', type_tag='1', value=''):
        self.path = path
        self.scope = str(scope)
        self.type_tag = str(type_tag)
        self.value = value

    @classmethod
    def parse(cls, line):
        """
        Parses a setting line.
        :return: the ProfileSetting, or None when the line is blank, a header, or has fewer than four fields.
        """
        if not line.strip() or line.startswith(HEADER_PREFIX):
            return None
        parts = line.split('\t', 3)
        if len(parts) < 4:
            return None
        return cls(*parts)

    def to_line(self):
        """
        >>> ProfileSetting('/profile/2/camera/binning', 1, 1, '2').to_line()
        '/profile/2/camera/binning\\t1\\t1\\t2'
        """
        return '\t'.join((self.path, self.scope, self.type_tag, self.value))


def upsert(lines, settings):
    """
    Replaces the lines of the given settings in place, and appends those not already present.
    Later lines for a path that was replaced are dropped, leaving one line per path. When settings
    repeat a path, the last one is written.
    """
    pending = {s.path: s for s in settings}
    written = set()
    result = []
    for line in lines:
        existing = ProfileSetting.parse(line)
        if existing is not None and existing.path in pending:
            if existing.path not in written:
                result.append(pending[existing.path].to_line())
                written.add(existing.path)
            continue
        result.append(line)
    result.extend(s.to_line() for s in pending.values() if s.path not in written)
    return result


class ProfileStore:
    """
    The settings held in one profile file.

    :param path: the location of the profile file. It need not exist; it is created on the first write.
    """

    def __init__(self, path, log=logger):
        self.path = os.path.abspath(os.path.expanduser(path))
        self.logger = log
        self._lock = lock_for(self.path)

    def _read_lines(self):
        """ the lines of the file, or None if it does not exist. Call with the lock held. """
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, encoding='utf-8') as f:
                return f.read().splitlines()
        except OSError as e:
            self.logger.error("error reading guider profile %s: %s", self.path, e)
            raise

    def _write_lines(self, lines):
        """ replaces the file contents, with the header first. Call with the lock held. """
        if not lines or not lines[0].startswith(HEADER_PREFIX):
            lines.insert(0, HEADER)
        directory = os.path.dirname(self.path)
        fd = None
        temp = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp = tempfile.mkstemp(prefix='.' + os.path.basename(self.path) + '.', suffix='.tmp', dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                fd = None
                f.write('\n'.join(lines) + '\n')
            os.replace(temp, self.path)
            temp = None
        except OSError as e:
            self.logger.error("error writing guider profile %s: %s", self.path, e)
            raise
        finally:
            if fd is not None:
                os.close(fd)
            if temp is not None and os.path.exists(temp):
                os.remove(temp)

    def _settings(self):
        lines = self._read_lines()
        if lines is None:
            self.logger.warning("guider profile file not found: %s", self.path)
            return {}
        settings = {}
        for line in lines:
            setting = ProfileSetting.parse(line)
            if setting is not None:
                settings[setting.path] = setting.value
        return settings

    def read(self) -> dict:
        """
        Reads every setting.
        :return: a dict of setting path to value. Empty when the file does not exist.
        """
        with self._lock:
            return self._settings()

    def get(self, path):
        """ :return: the value of the setting at path, or None if there is no such setting. """
        if not path:
            raise InvalidArgumentError("setting path must not be empty")
        return self.read().get(path)

    def set(self, path, value, scope=1):
        """ adds or replaces a setting. Creates the file if needed. """
        if not path:
            raise InvalidArgumentError("setting path must not be empty")
        if value is None:
            raise InvalidArgumentError("setting value must not be None")
        setting = ProfileSetting(check_field("setting path", path), scope, 1,
                                 check_field("setting value", str(value)))
        with self._lock:
            lines = self._read_lines() or []
            self._write_lines(upsert(lines, [setting]))
        self.logger.debug("updated guider profile setting: %s = %s", path, value)

    def delete(self, path):
        """ removes a setting. Does nothing when the setting or the file does not exist. """
        if not path:
            raise InvalidArgumentError("setting path must not be empty")
        self._remove(lambda setting: setting.path == path)
        self.logger.debug("deleted guider profile setting: %s", path)

    def _remove(self, predicate):
        with self._lock:
            lines = self._read_lines()
            if lines is None:
                return 0
            kept = []
            for line in lines:
                setting = ProfileSetting.parse(line)
                if setting is None or not predicate(setting):
                    kept.append(line)
            removed = len(lines) - len(kept)
            if removed:
                self._write_lines(kept)
            return removed

    def get_section(self, prefix) -> dict:
        """
        Retrieves the settings whose path starts with prefix. The match is on the raw text,
        so '/profile/2' also matches the settings of profile 20.
        """
        if not prefix:
            raise InvalidArgumentError("section path must not be empty")
        return {path: value for path, value in self.read().items() if path.startswith(prefix)}

    def list_profiles(self):
        """ :return: the sorted numbers of the profiles that have settings. """
        numbers = set()
        for path in self.read():
            match = _profile_number.search(path)
            if match:
                numbers.add(int(match.group(1)))
        return sorted(numbers)

    def create_profile(self, number, name=None, template=None):
        """
        Creates or overwrites the settings of a profile.
        :param number: the profile number, from 1
        :param name: the profile name
        :param template: a dict of settings to start from. Only settings of this profile's
            number are used. When empty, a default set of settings is written.
        """
        if number < 1:
            raise InvalidArgumentError("profile number must be >= 1, not %s" % number)
        if template:
            marker = profile_marker(number)
            entries = {path: str(value) for path, value in template.items() if marker in path}
            if name:
                entries[marker + 'name'] = name
        else:
            entries = dict(default_profile_settings(number, name))
        settings = [ProfileSetting(check_field("setting path", path), 1, 1, check_field("setting value", value))
                    for path, value in entries.items()]
        with self._lock:
            lines = self._read_lines() or []
            self._write_lines(upsert(lines, settings))
        self.logger.info("created guider profile %d (name: %s)", number, name or 'default')

    def duplicate_profile(self, source, target, new_name=None):
        """
        Copies every setting of profile source to profile target, replacing target's settings.
        :raises ProfileNotFoundError: if the file does not exist
        :raises NotFoundError: if profile source has no settings
        """
        if source == target:
            raise InvalidArgumentError("source and target profile numbers must be different")
        if target < 1:
            raise InvalidArgumentError("profile number must be >= 1, not %s" % target)
        if new_name:
            check_field("profile name", new_name)
        source_marker = profile_marker(source)
        target_marker = profile_marker(target)
        with self._lock:
            lines = self._read_lines()
            if lines is None:
                raise ProfileNotFoundError("profile file not found: %s" % self.path)
            copies = []
            kept = []
            for line in lines:
                setting = ProfileSetting.parse(line)
                if setting is not None and target_marker in setting.path:
                    continue
                kept.append(line)
                if setting is not None and source_marker in setting.path:
                    copies.append(ProfileSetting(setting.path.replace(source_marker, target_marker),
                                                 setting.scope, setting.type_tag, setting.value))
            if not copies:
                raise NotFoundError("profile %d has no settings in %s" % (source, self.path))
            if new_name:
                name_path = target_marker + 'name'
                named = [c for c in copies if c.path == name_path]
                for copy in named:
                    copy.scope, copy.type_tag, copy.value = '1', '1', new_name
                if not named:
                    copies.append(ProfileSetting(name_path, 1, 1, new_name))
            self._write_lines(kept + [c.to_line() for c in copies])
        self.logger.info("duplicated guider profile %d to %d", source, target)

    def delete_profile(self, number):
        """ removes every setting of a profile. Does nothing when the file does not exist. """
        if number < 1:
            raise InvalidArgumentError("profile number must be >= 1, not %s" % number)
        marker = profile_marker(number)
        removed = self._remove(lambda setting: marker in setting.path)
        self.logger.info("deleted guider profile %d (%d settings)", number, removed)

    def get_current_profile(self):
        """ :return: the number of the profile the guider last used, 1 if unknown. """
        try:
            return int(self.read().get(CURRENT_PROFILE, ''))
        except ValueError:
            return 1

    def get_profile_info(self, number) -> dict:
        section = self.get_section('/profile/%d' % number)
        info = {'profile_number': number, 'setting_count': len(section), 'settings': section}
        name = section.get(profile_marker(number) + 'name')
        if name is not None:
            info['name'] = name
        return info

    def export_profile(self) -> dict:
        """ every setting, with values converted to bool, int or float where they represent one. """
        return {path: typed_value(value) for path, value in self.read().items()}
