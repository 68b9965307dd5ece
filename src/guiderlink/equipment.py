"""
The equipment directory: the cameras and mounts the guider can use, which of them is
selected, and the options of the selected camera.

EquipmentDirectory is the contract. The guider publishes this information through a
shared memory facility, which is read by an implementation outside this package;
InMemoryEquipmentDirectory implements the same contract over plain lists.
"""
import logging
import threading
import time
from abc import abstractmethod

from guiderlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)


class CameraInstance(ValueObject):
    """ one physical unit of a camera model, when several are attached. """

    def __init__(self, id, display_name):
        self.id = id
        self.display_name = display_name


class CameraOption(ValueObject):
    """ an integer camera setting with its permitted range. """

    def __init__(self, name, value=0, min_value=0, max_value=0):
        self.name = name
        self.value = value
        self.min_value = min_value
        self.max_value = max_value

    def accepts(self, value):
        return self.min_value <= value <= self.max_value


class EquipmentDirectory:
    """ Lists the guider's equipment and selects which of it is used. """

    @abstractmethod
    def list_cameras(self):
        """ :return: the names of the available cameras, in index order. """
        raise NotImplementedError

    @abstractmethod
    def get_selected_camera_index(self):
        """ :return: the index of the selected camera, or None if no camera is selected. """
        raise NotImplementedError

    @abstractmethod
    def set_selected_camera_index(self, index) -> bool:
        """ :return: False if the index is out of range. """
        raise NotImplementedError

    @abstractmethod
    def get_selected_camera_id(self):
        raise NotImplementedError

    @abstractmethod
    def list_camera_instances(self):
        """ :return: the display names of the instances of the selected camera. """
        raise NotImplementedError

    @abstractmethod
    def instance_selection_available(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_selected_camera_instance(self):
        raise NotImplementedError

    @abstractmethod
    def set_selected_camera_instance(self, instance_id) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_mounts(self):
        raise NotImplementedError

    @abstractmethod
    def get_selected_mount_index(self):
        raise NotImplementedError

    @abstractmethod
    def set_selected_mount_index(self, index) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_camera_options(self):
        """ :return: the names of the selected camera's options. """
        raise NotImplementedError

    @abstractmethod
    def get_camera_option(self, name):
        """ :return: the option's value, or None if there is no such option. """
        raise NotImplementedError

    @abstractmethod
    def set_camera_option(self, name, value) -> bool:
        """ :return: False if there is no such option, or the value is not an integer within its range. """
        raise NotImplementedError


class InMemoryEquipmentDirectory(EquipmentDirectory):
    """
    An equipment directory held in memory.

    Each change of selection increments change_counter and stamps updated_at, which
    pollers use to notice a new selection.
    """

    def __init__(self, cameras=(), mounts=(), instances=(), options=(), instance_selection=False,
                 clock=time.time, log=logger):
        self._lock = threading.Lock()
        self.cameras = list(cameras)
        self.mounts = list(mounts)
        self.instances = list(instances)
        self.options = {option.name: option for option in options}
        self.instance_selection = instance_selection
        self.selected_camera = None
        self.selected_mount = None
        self.selected_instance = None
        self.change_counter = 0
        self.updated_at = None
        self._clock = clock
        self.logger = log

    def _changed(self):
        self.change_counter += 1
        self.updated_at = self._clock()

    def list_cameras(self):
        with self._lock:
            return [name for name in self.cameras if name]

    def get_selected_camera_index(self):
        with self._lock:
            return self.selected_camera

    def set_selected_camera_index(self, index):
        with self._lock:
            if not 0 <= index < len(self.cameras):
                self.logger.error("camera index %s out of range (cameras: %d)", index, len(self.cameras))
                return False
            self.selected_camera = index
            self._changed()
        self.logger.debug("set selected camera index to %d", index)
        return True

    def get_selected_camera_id(self):
        with self._lock:
            if self.selected_camera is None:
                return None
            return self.cameras[self.selected_camera]

    def list_camera_instances(self):
        with self._lock:
            return [i.display_name for i in self.instances if i.display_name]

    def instance_selection_available(self):
        return self.instance_selection

    def get_selected_camera_instance(self):
        with self._lock:
            return self.selected_instance

    def set_selected_camera_instance(self, instance_id):
        with self._lock:
            if instance_id and instance_id not in [i.id for i in self.instances]:
                self.logger.error("unknown camera instance %s", instance_id)
                return False
            self.selected_instance = instance_id or None
            self._changed()
        return True

    def list_mounts(self):
        with self._lock:
            return [name for name in self.mounts if name]

    def get_selected_mount_index(self):
        with self._lock:
            return self.selected_mount

    def set_selected_mount_index(self, index):
        with self._lock:
            if not 0 <= index < len(self.mounts):
                self.logger.error("mount index %s out of range (mounts: %d)", index, len(self.mounts))
                return False
            self.selected_mount = index
            self._changed()
        return True

    def list_camera_options(self):
        with self._lock:
            return [name.strip() for name in self.options]

    def get_camera_option(self, name):
        with self._lock:
            option = self.options.get(name)
            return None if option is None else option.value

    def set_camera_option(self, name, value):
        try:
            value = int(value)
        except (TypeError, ValueError):
            self.logger.error("invalid value for camera option '%s': %s", name, value)
            return False
        with self._lock:
            option = self.options.get(name)
            if option is None or not option.accepts(value):
                return False
            option.value = value
            self._changed()
        return True
