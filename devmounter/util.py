"""Pod, resource and device-file helpers."""

import enum
import logging
import math
import os
import re
import stat
import subprocess
import time
from decimal import Decimal, InvalidOperation
from fractions import Fraction

log = logging.getLogger(__name__)

LABEL_HOSTNAME = "kubernetes.io/hostname"
DEFAULT_BIND_VOLUME_SCRIPT = "/scripts/dynamic_bind_volume.sh"

_SLAVE_CONTAINER_ARGS = (
    "trap 'echo Ignoring termination signal; sleep infinity &' SIGTERM; "
    "while true; do echo this is a slave device container; sleep 10; done"
)


class DeviceType(str, enum.Enum):
    """Kind of a device node as written in cgroup device rules."""

    WILDCARD = "a"
    BLOCK = "b"
    CHAR = "c"
    FIFO = "p"


_QUANTITY_RE = re.compile(r"^([+-]?)(\d+(?:\.\d*)?|\.\d+)([eE][+-]?\d+|[a-zA-Z]*)$")

_SUFFIXES = {
    "Ki": Fraction(2) ** 10,
    "Mi": Fraction(2) ** 20,
    "Gi": Fraction(2) ** 30,
    "Ti": Fraction(2) ** 40,
    "Pi": Fraction(2) ** 50,
    "Ei": Fraction(2) ** 60,
    "n": Fraction(10) ** -9,
    "u": Fraction(10) ** -6,
    "m": Fraction(10) ** -3,
    "": Fraction(1),
    "k": Fraction(10) ** 3,
    "M": Fraction(10) ** 6,
    "G": Fraction(10) ** 9,
    "T": Fraction(10) ** 12,
    "P": Fraction(10) ** 15,
    "E": Fraction(10) ** 18,
}


def parse_quantity(value):
    """Parse a resource quantity such as ``"500m"`` or ``"1Gi"`` into an exact Fraction."""
    if isinstance(value, (int, float, Decimal, Fraction)) and not isinstance(value, bool):
        return Fraction(value)
    match = _QUANTITY_RE.match(str(value))
    if not match:
        raise ValueError(
            f"quantities must match the regular expression "
            f"'^([+-]?[0-9.]+)([eEinumkKMGTP]*[-+]?[0-9]*)$': {value!r}"
        )
    sign, number, suffix = match.groups()
    try:
        amount = Fraction(Decimal(number))
    except InvalidOperation as err:
        raise ValueError(f"invalid quantity {value!r}") from err
    if suffix in _SUFFIXES:
        amount *= _SUFFIXES[suffix]
    elif suffix[:1] in ("e", "E") and len(suffix) > 1:
        amount *= Fraction(10) ** int(suffix[1:])
    else:
        raise ValueError(f"unable to parse quantity's suffix: {value!r}")
    return -amount if sign == "-" else amount


def is_sidecar(container):
    """Whether a container spec is a restartable init (sidecar) container."""
    return container.get("restartPolicy") == "Always"


def loop_retry(retry_count, interval, condition):
    """Call ``condition`` until it returns true, at most ``retry_count`` times.

    Exceptions from ``condition`` propagate; running out of attempts raises TimeoutError.
    """
    for attempt in range(retry_count):
        if condition():
            return
        if attempt + 1 == retry_count:
            raise TimeoutError(f"unable to complete after {retry_count} retries")
        time.sleep(interval)


def delete_slice_func(items, keep):
    """Return the items for which ``keep`` is true, in order; ``None`` stays ``None``."""
    if items is None:
        return None
    return [item for item in items if keep(item)]


def check_resources_in_node(node, request):
    """Whether the node's allocatable resources cover every requested amount."""
    if node is None:
        return False
    allocatable = (node.get("status") or {}).get("allocatable") or {}
    for name, wanted in request.items():
        if name not in allocatable:
            return False
        if math.ceil(parse_quantity(allocatable[name])) < math.ceil(parse_quantity(wanted)):
            return False
    return True


def check_resources_in_slice(resources, names, ignore):
    """Whether every name is requested with a non-zero amount and nothing else is requested
    apart from the ignored names."""
    allowed = set()
    for name in names or ():
        allowed.add(name)
        if name not in resources or parse_quantity(resources[name]) == 0:
            return False
    allowed.update(ignore or ())
    return all(name in allowed for name in resources)


def _drop_empty(mapping):
    return {key: value for key, value in mapping.items() if value not in (None, "", {}, [])}


def new_device_slave_pod(owner_pod, limits, annotations, labels, image, pull_policy):
    """Build the spec of a placeholder pod that holds devices for ``owner_pod``."""
    owner_meta = owner_pod.get("metadata") or {}
    owner_spec = owner_pod.get("spec") or {}
    container = {
        "name": "device-container",
        "image": image,
        "imagePullPolicy": pull_policy,
        "command": ["/bin/sh", "-c"],
        "args": [_SLAVE_CONTAINER_ARGS],
        "resources": _drop_empty({"limits": dict(limits) if limits else None}),
    }
    spec = {
        "containers": [_drop_empty(container)],
        "schedulerName": owner_spec.get("schedulerName"),
        "priorityClassName": owner_spec.get("priorityClassName"),
        "priority": owner_spec.get("priority"),
        "restartPolicy": "Always",
        "nodeSelector": {LABEL_HOSTNAME: owner_spec.get("nodeName", "")},
    }
    metadata = {
        "generateName": f"{owner_meta.get('name', '')}-device-slave-",
        "annotations": dict(annotations) if annotations else None,
        "labels": dict(labels) if labels else None,
    }
    return {"metadata": _drop_empty(metadata), "spec": _drop_empty(spec), "status": {}}


def _stat(device_file):
    try:
        return os.stat(device_file)
    except OSError as err:
        raise OSError(
            err.errno, f"Error getting file info: {err.strerror}", device_file
        ) from err


def get_device_file_version_v2(device_file):
    """Return ``(major, minor, DeviceType)`` of a device node; raise ValueError for other files."""
    info = _stat(device_file)
    if stat.S_ISCHR(info.st_mode):
        device_type = DeviceType.CHAR
    elif stat.S_ISBLK(info.st_mode):
        device_type = DeviceType.BLOCK
    else:
        raise ValueError(f"{device_file} Not a device file")
    return os.major(info.st_rdev), os.minor(info.st_rdev), device_type


def get_device_file_version(device_file):
    """Return ``(major, minor)`` of the device number a file refers to."""
    info = _stat(device_file)
    return os.major(info.st_rdev), os.minor(info.st_rdev)


def exec_dynamic_bind_volume(container_pid, host_path, container_path):
    """Run the bind-volume script that mounts ``host_path`` into a container."""
    script = os.environ.get("DYNAMIC_BIND_VOLUME_SCRIPT", DEFAULT_BIND_VOLUME_SCRIPT)
    cmd = [script, str(container_pid), host_path, container_path]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        log.error("Failed to perform dynamic volume binding: %s", cmd)
        log.error("Std Output: %s", result.stdout)
        log.error("Err Output: %s", result.stderr)
        raise subprocess.CalledProcessError(
            result.returncode, cmd, output=result.stdout, stderr=result.stderr
        )