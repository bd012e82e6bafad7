"""Registry of device mounters keyed by device type."""

import abc
import logging
import threading

log = logging.getLogger(__name__)


class DeviceMounter(abc.ABC):
    """A plug-in that knows how to mount one kind of device."""

    @abc.abstractmethod
    def get_device_type(self):
        """Return the type identifier of the devices this mounter handles."""


class MounterRegistry:
    """Collects mounter factories and the mounters they create."""

    def __init__(self):
        self._lock = threading.Lock()
        self._factories = []
        self._mounters = {}

    def add_factory(self, create):
        """Queue a factory; ``None`` is ignored."""
        with self._lock:
            if create is not None:
                self._factories.append(create)

    def register(self):
        """Create a mounter from every factory; failing factories are logged and skipped."""
        with self._lock:
            for create in self._factories:
                try:
                    mounter = create()
                except Exception as err:  # a broken plug-in must not stop the rest
                    log.error("%s", err)
                    continue
                self._mounters[mounter.get_device_type().upper()] = mounter

    def device_types(self):
        """Return the device types of all registered mounters."""
        with self._lock:
            return [mounter.get_device_type() for mounter in self._mounters.values()]

    def get(self, dev_type):
        """Return the mounter registered under ``dev_type``, or ``None``."""
        with self._lock:
            return self._mounters.get(dev_type)


_default_registry = MounterRegistry()


def add_device_mounter_func(create):
    """Queue a factory in the default registry."""
    _default_registry.add_factory(create)


def register_device_mounters():
    """Create mounters from all factories in the default registry."""
    _default_registry.register()


def get_device_mounter_types():
    """Return the device types registered in the default registry."""
    return _default_registry.device_types()


def get_device_mounter(dev_type):
    """Return the mounter for ``dev_type`` from the default registry, or ``None``."""
    return _default_registry.get(dev_type)