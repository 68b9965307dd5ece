"""
Layered configuration files.

A configuration named `guiderlink` is assembled from these files, each overriding the ones before:

- guiderlink.default.cfg      shipped defaults
- guiderlink.<platform>.cfg   platform specific defaults (windows, linux, osx)
- ~/guiderlink.cfg            the user's settings
- guiderlink.cfg              settings local to the configuration directory

The result is validated against guiderlink.schema.cfg, which also supplies typed defaults
for anything left unset.
"""
import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from validate import Validator

from guiderlink.support.mixins import ValueObject

config_extension = '.cfg'

# the directory holding the configuration shipped with the package
package_directory = os.path.dirname(os.path.abspath(__file__))


def config_path(name, flavor=None, directory=None):
    """
    >>> config_path('guiderlink', 'schema', '/etc') == os.path.join('/etc', 'guiderlink.schema.cfg')
    True
    """
    filename = name + ('.' + flavor if flavor else '') + config_extension
    return os.path.join(directory or package_directory, filename)


def load_config_file(file, must_exist=True) -> ConfigObj:
    """
    Parses one configuration file.
    :param must_exist: when False, a missing file gives an empty configuration.
    :raises ConfigObjError: when the file cannot be parsed. The message names the file.
    """
    if not must_exist and not os.path.exists(file):
        return ConfigObj()
    try:
        return ConfigObj(file, interpolation='Template', file_error=True)
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def platform_flavor(system=None):
    """
    >>> platform_flavor('Windows'), platform_flavor('Darwin')
    ('windows', 'osx')
    """
    system = (system or platform.system()).lower()
    return 'osx' if system == 'darwin' else system


def validation_errors(config, result):
    """ describes each failure in a validation result. """
    errors = []
    for sections, key, error in flatten_errors(config, result):
        section = ', '.join(sections) or 'top level'
        if key is None:
            errors.append('missing section "%s"' % section)
        elif error is False:
            errors.append('missing value "%s" in section "%s"' % (key, section))
        else:
            errors.append('"%s" in section "%s": %s' % (key, section, error))
    return errors


def load_config(name, directory=None, user_directory=None) -> ConfigObj:
    """
    Loads and validates the layered configuration for name.
    :param directory: the location of the default, platform, local and schema files. Defaults to
        the configuration shipped with the package.
    :param user_directory: the location of the user's file. Defaults to the home directory.
    :raises ConfigObjError: if a file cannot be parsed or the merged configuration is invalid
    """
    directory = directory or package_directory
    layers = [
        config_path(name, 'default', directory),
        config_path(name, platform_flavor(), directory),
        config_path(name, None, user_directory or os.path.expanduser('~')),
        config_path(name, None, directory),
    ]
    schema = config_path(name, 'schema', directory)
    config = ConfigObj(configspec=schema if os.path.exists(schema) else None)
    for layer in layers:
        config.merge(load_config_file(layer, must_exist=False))

    if config.configspec is None:
        return config
    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        raise ConfigObjError("the config file %s failed validation: %s"
                             % (name, '; '.join(validation_errors(config, result))))
    return config


def fetch_section(conf: Section, path):
    """
    Retrieves a nested section.
    :param path: the names of the sections to descend through
    :return: the section, or None if any part of the path is missing
    """
    for name in path:
        conf = conf.get(name)
        if conf is None:
            return None
    return conf


def apply_section(conf: Section, path, target):
    """ sets each value in the section at path as the attribute of the same name on target, where target has one. """
    section = fetch_section(conf, path) or {}
    for key, value in section.items():
        if hasattr(target, key):
            setattr(target, key, value)


class SessionSettings(ValueObject):
    """
    The settings of a guider session.
    """

    def __init__(self, host='localhost', instance=1, base_port=4400, max_attempts=10, backoff_step=1.0,
                 connect_timeout=5.0, call_timeout=10.0, profile_file=None):
        self.host = host
        self.instance = instance
        self.base_port = base_port
        self.max_attempts = max_attempts
        self.backoff_step = backoff_step
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.profile_file = profile_file

    @classmethod
    def from_config(cls, conf: Section):
        """
        Builds settings from the [guider] and [profile] sections of a validated configuration.
        """
        settings = cls()
        apply_section(conf, ['guider'], settings)
        apply_section(conf, ['profile'], settings)
        if settings.profile_file:
            settings.profile_file = os.path.expanduser(settings.profile_file)
        else:
            settings.profile_file = None
        return settings


def load_settings(directory=None, name='guiderlink', user_directory=None) -> SessionSettings:
    return SessionSettings.from_config(load_config(name, directory, user_directory))
