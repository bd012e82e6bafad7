"""Keeps a node's scheduling labels in line with the registered device types."""

import json
import logging
import threading
import time

from devmounter import framework

log = logging.getLogger(__name__)

LABELS_PATH = "/metadata/labels/"
LABEL_TRUE = "true"

UPDATE_INTERVAL = 15.0
ERROR_INTERVAL = 5.0

_RETRY_STEPS = 5
_RETRY_DELAY = 0.01


class ConflictError(Exception):
    """Raised by a node patcher when the node was changed concurrently."""


def _escape(key):
    return key.replace("/", "~1")


def _label_key(prefix, dev_type):
    return (prefix + "/" + dev_type).lower()


def _node_labels(node):
    return (node.get("metadata") or {}).get("labels") or {}


def contains_device_types(label_key, device_types, prefix):
    """Whether a label key is the scheduling label of one of the device types."""
    return any(label_key == _label_key(prefix, dev_type) for dev_type in device_types)


def cleanup_label_patches(labels, prefix):
    """JSON patch operations removing every label under the scheduling prefix."""
    return [
        {"op": "remove", "path": LABELS_PATH + _escape(key)}
        for key in (labels or {})
        if key.startswith(prefix)
    ]


def compute_label_patches(labels, device_types, prefix):
    """JSON patch operations that make the node's scheduling labels match the device types.

    Missing labels are added, labels of unknown types removed and labels whose value
    is not ``"true"`` replaced, in that order.
    """
    labels = labels or {}
    device_types = list(device_types)
    present = [key for key in labels if key.startswith(prefix)]
    remove_keys = [
        key for key in present if not contains_device_types(key, device_types, prefix)
    ]
    add_keys = []
    replace_keys = []
    for dev_type in device_types:
        key = _label_key(prefix, dev_type)
        if key not in present:
            add_keys.append(key)
        elif labels[key] != LABEL_TRUE:
            replace_keys.append(key)

    patches = [
        {"op": "add", "path": LABELS_PATH + _escape(key), "value": LABEL_TRUE}
        for key in add_keys
    ]
    patches += [{"op": "remove", "path": LABELS_PATH + _escape(key)} for key in remove_keys]
    patches += [
        {"op": "replace", "path": LABELS_PATH + _escape(key), "value": LABEL_TRUE}
        for key in replace_keys
    ]
    return patches


def _retry_on_conflict(action):
    for attempt in range(_RETRY_STEPS):
        try:
            return action()
        except ConflictError:
            if attempt + 1 == _RETRY_STEPS:
                raise
            time.sleep(_RETRY_DELAY)
    return None


class NodeLabeller:
    """Periodically labels a node with the device types it can mount.

    ``get_node(name)`` returns the node as a dict and ``patch_node(name, patch)``
    applies a JSON patch given as bytes.
    """

    def __init__(self, node_name, get_node, patch_node, prefix, device_types=None):
        self.node_name = node_name
        self.prefix = prefix
        self._get_node = get_node
        self._patch_node = patch_node
        self._device_types = device_types or framework.get_device_mounter_types
        self._stopped = threading.Event()

    def start(self, stop):
        """Update labels until ``stop`` is set, then remove them all."""
        self._stopped.clear()
        while not stop.is_set():
            try:
                self.update_labels()
            except Exception as err:  # keep labelling after transient failures
                log.debug("NodeLabeler update failed: %s", err)
                delay = ERROR_INTERVAL
            else:
                delay = UPDATE_INTERVAL
            stop.wait(delay)
        try:
            _retry_on_conflict(self.cleanup_labels)
        except Exception as err:
            log.error("NodeLabeler cleanup node labels failed: %s", err)
        self._stopped.set()
        log.info("NodeLabeler has stopped")

    def wait_for_stop(self):
        """Block until ``start`` has finished."""
        return self._stopped.wait()

    def _apply(self, patches):
        if not patches:
            return
        log.debug("Patch node labels %s", patches)
        self._patch_node(self.node_name, json.dumps(patches).encode())

    def update_labels(self):
        """Patch the node so its scheduling labels match the registered device types."""
        node = self._get_node(self.node_name)
        self._apply(
            compute_label_patches(_node_labels(node), self._device_types(), self.prefix)
        )

    def cleanup_labels(self):
        """Remove all scheduling labels from the node."""
        node = self._get_node(self.node_name)
        self._apply(cleanup_label_patches(_node_labels(node), self.prefix))