"""Container cgroup paths, device-node creation and cgroup device permissions."""

import logging
import os
import posixpath
import subprocess
from dataclasses import dataclass

from devmounter.ebpf import WILDCARD, Rule
from devmounter.util import parse_quantity

log = logging.getLogger(__name__)

SYSTEMD = "systemd"
CGROUPFS = "cgroupfs"

QOS_GUARANTEED = "Guaranteed"
QOS_BURSTABLE = "Burstable"
QOS_BEST_EFFORT = "BestEffort"

_QOS_COMPUTE_RESOURCES = ("cpu", "memory")
_SLICE_SUFFIX = ".slice"


class CgroupError(Exception):
    """Raised when a container's cgroup cannot be located."""


class NsenterError(Exception):
    """Raised when a command run inside a container's namespaces fails."""

    def __init__(self, message, stdout="", stderr=""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def _type_char(device_type):
    return getattr(device_type, "value", device_type)


@dataclass(frozen=True)
class DeviceInfo:
    """A device node to create or remove in a container, with its access rule."""

    device_file_path: str
    type: str
    major: int = WILDCARD
    minor: int = WILDCARD
    permissions: str = ""
    allow: bool = False

    @property
    def rule(self):
        """The device access rule this device needs."""
        return Rule(
            type=_type_char(self.type),
            major=self.major,
            minor=self.minor,
            permissions=self.permissions,
            allow=self.allow,
        )


@dataclass
class NsenterConfig:
    """Options for running a program inside the namespaces of a target process."""

    target: int = 0
    cgroup: bool = False
    cgroup_file: str = ""
    follow_context: bool = False
    gid: int = 0
    ipc: bool = False
    ipc_file: str = ""
    mount: bool = False
    mount_file: str = ""
    net: bool = False
    net_file: str = ""
    no_fork: bool = False
    pid: bool = False
    pid_file: str = ""
    preserve_credentials: bool = False
    root_directory: str = ""
    uid: int = 0
    user: bool = False
    user_file: str = ""
    uts: bool = False
    uts_file: str = ""
    working_directory: str = ""

    def build_args(self):
        """Return the nsenter command line, without the program to run."""
        if self.target == 0:
            raise ValueError("Target must be specified")
        args = ["nsenter", "--target", str(self.target)]

        def namespace(enabled, file, option):
            if enabled:
                args.append(f"--{option}={file}" if file else f"--{option}")

        namespace(self.cgroup, self.cgroup_file, "cgroup")
        if self.follow_context:
            args.append("--follow-context")
        if self.gid:
            args += ["--setgid", str(self.gid)]
        namespace(self.ipc, self.ipc_file, "ipc")
        namespace(self.mount, self.mount_file, "mount")
        namespace(self.net, self.net_file, "net")
        if self.no_fork:
            args.append("--no-fork")
        namespace(self.pid, self.pid_file, "pid")
        if self.preserve_credentials:
            args.append("--preserve-credentials")
        if self.root_directory:
            args += ["--root", self.root_directory]
        if self.uid:
            args += ["--setuid", str(self.uid)]
        namespace(self.user, self.user_file, "user")
        namespace(self.uts, self.uts_file, "uts")
        if self.working_directory:
            args += ["--wd", self.working_directory]
        return args

    def execute(self, program, *args):
        """Run ``program`` in the target's namespaces and return ``(stdout, stderr)``."""
        try:
            cmd = self.build_args()
        except ValueError as err:
            raise NsenterError(f"Error while building command: {err}") from err
        cmd += [program, *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as err:
            raise NsenterError(f"Error while executing command: {err}") from err
        if result.returncode != 0:
            raise NsenterError(
                f"Error while executing command: exit status {result.returncode}",
                result.stdout,
                result.stderr,
            )
        return result.stdout, result.stderr


def _run_in_container(config, cmd):
    try:
        config.execute("sh", "-c", cmd)
    except NsenterError as err:
        log.error("Failed to execute cmd: %s", cmd)
        log.error("Std Output: %s", err.stdout)
        log.error("Err Output: %s", err.stderr)
        raise


def add_device_file(config, device_info):
    """Create the device node in the container; devices that are not allowed are skipped."""
    if not device_info.allow:
        return
    cmd = (
        f"mknod -m 666 {device_info.device_file_path} {_type_char(device_info.type)} "
        f"{device_info.major} {device_info.minor}"
    )
    _run_in_container(config, cmd)


def remove_device_file(config, device_info):
    """Remove the device node from the container; allowed devices are skipped."""
    if device_info.allow:
        return
    _run_in_container(config, "rm " + device_info.device_file_path)


def kill_running_processes(config, processes):
    """Send SIGTERM to the given process ids inside the container."""
    _run_in_container(config, "kill " + " ".join(str(pid) for pid in processes))


def _write_device_rule(device_cgroup_path, file_name, device_info):
    line = (
        f"{_type_char(device_info.type)} {device_info.major}:{device_info.minor} "
        f"{device_info.permissions}\n"
    )
    target = device_cgroup_path + "/" + file_name
    try:
        with open(target, "w", encoding="ascii") as handle:
            handle.write(line)
    except OSError as err:
        log.error("Writing %r to %s failed: %s", line.strip(), target, err)
        raise


def add_device_permission(device_cgroup_path, device_info):
    """Allow access to the device in a cgroup v1 devices controller."""
    _write_device_rule(device_cgroup_path, "devices.allow", device_info)


def remove_device_permission(device_cgroup_path, device_info):
    """Deny access to the device in a cgroup v1 devices controller."""
    _write_device_rule(device_cgroup_path, "devices.deny", device_info)


def get_device_group_path_v1(pod_cgroup_path):
    """Absolute path of a cgroup in the v1 devices hierarchy."""
    return posixpath.normpath("/sys/fs/cgroup/devices/" + pod_cgroup_path)


def get_group_path_v2(pod_cgroup_path):
    """Absolute path of a cgroup in the unified v2 hierarchy."""
    return posixpath.normpath("/sys/fs/cgroup/" + pod_cgroup_path)


def get_pod_qos(pod):
    """Compute the QoS class of a pod from the cpu and memory of its containers."""
    spec = pod.get("spec") or {}
    containers = list(spec.get("containers") or []) + list(spec.get("initContainers") or [])
    requests = {}
    limits = {}
    guaranteed = True
    for container in containers:
        resources = container.get("resources") or {}
        for name, value in (resources.get("requests") or {}).items():
            if name not in _QOS_COMPUTE_RESOURCES:
                continue
            quantity = parse_quantity(value)
            if quantity > 0:
                requests[name] = requests.get(name, 0) + quantity
        limits_found = set()
        for name, value in (resources.get("limits") or {}).items():
            if name not in _QOS_COMPUTE_RESOURCES:
                continue
            quantity = parse_quantity(value)
            if quantity > 0:
                limits_found.add(name)
                limits[name] = limits.get(name, 0) + quantity
        if not limits_found.issuperset(_QOS_COMPUTE_RESOURCES):
            guaranteed = False
    if not requests and not limits:
        return QOS_BEST_EFFORT
    if guaranteed and any(limits.get(name) != req for name, req in requests.items()):
        guaranteed = False
    if guaranteed and len(requests) == len(limits):
        return QOS_GUARANTEED
    return QOS_BURSTABLE


def get_k8s_pod_cgroup_path(pod, container_name, cgroup_driver, old_version):
    """Cgroup path, relative to the hierarchy root, of a container of a pod."""
    status = pod.get("status") or {}
    for container_status in status.get("containerStatuses") or []:
        if container_status.get("name") == container_name:
            runtime_name, container_id = parse_runtime(container_status.get("containerID", ""))
            break
    else:
        raise CgroupError("Failed to obtain container cgroup path")

    qos = status.get("qosClass") or get_pod_qos(pod)
    if qos == QOS_GUARANTEED:
        cgroups = ["kubepods"]
    elif qos in (QOS_BURSTABLE, QOS_BEST_EFFORT):
        cgroups = ["kubepods", qos.lower()]
    else:
        cgroups = []
    uid = (pod.get("metadata") or {}).get("uid", "")
    cgroups.append("pod" + uid)

    if cgroup_driver == SYSTEMD:
        return convert_path(runtime_name, container_id, cgroups, old_version)
    if cgroup_driver == CGROUPFS:
        return "/".join(part for part in [*cgroups, container_id] if part)
    raise CgroupError("Unknown CGroup Driver, Unable to locate cgroup directory")


def convert_path(runtime_name, container_id, cgroups, old_version):
    """Systemd cgroup path of a container for the given container runtime."""
    prefix = systemd_path_prefix_of_runtime(runtime_name)
    scope = f"{to_systemd(cgroups, False)}/{prefix}-{container_id}.scope"
    if runtime_name == "containerd" and not old_version:
        return f"system.slice/{runtime_name}.service/{to_systemd(cgroups, True)}:{prefix}:{container_id}"
    if runtime_name == "docker" and not old_version:
        return f"{to_systemd(cgroups, False)}/{container_id}"
    return scope


def expand_slice(slice_name):
    """Expand a systemd slice name into the path of nested slices it stands for."""
    if not slice_name.endswith(_SLICE_SUFFIX) or "/" in slice_name:
        raise ValueError(f"invalid slice name: {slice_name}")
    name = slice_name[: -len(_SLICE_SUFFIX)]
    if name == "-":
        return "/"
    path = ""
    prefix = ""
    for component in name.split("-"):
        if not component:
            raise ValueError(f"invalid slice name: {slice_name}")
        path += "/" + prefix + component + _SLICE_SUFFIX
        prefix += component + "-"
    return path


def to_systemd(cgroup_name, new_containerd):
    """Convert a cgroup name into its systemd slice form."""
    if not cgroup_name or list(cgroup_name) == [""]:
        return "/"
    slice_name = "-".join(part.replace("-", "_") for part in cgroup_name) + _SLICE_SUFFIX
    if new_containerd:
        return slice_name
    try:
        return expand_slice(slice_name)
    except ValueError as err:
        raise ValueError(
            f"error converting cgroup name {list(cgroup_name)} to systemd format: {err}"
        ) from err


def systemd_path_prefix_of_runtime(runtime_name):
    """Prefix a container runtime gives the systemd scopes of its containers."""
    if runtime_name == "cri-o":
        return "crio"
    if runtime_name == "containerd":
        return "cri-containerd"
    if runtime_name != "docker":
        log.warning(
            "prefix of container runtime %s was not tested. Maybe not correct!", runtime_name
        )
    return runtime_name


def parse_runtime(pod_container_id):
    """Split ``runtime://id`` into ``(runtime, id)``; anything else gives empty strings."""
    parts = pod_container_id.split("://")
    if len(parts) == 2:
        return parts[0], parts[1]
    return "", ""


def is_rwm(perms):
    """Whether the permissions grant read, write and mknod."""
    return {"r", "w", "m"}.issubset(perms)


def can_skip_ebpf_error(rules):
    """Whether failing to load a device filter is harmless for these rules."""
    return all(rule.allow and is_rwm(rule.permissions) for rule in rules)


def nil_closer():
    """A cleanup action with nothing to release; it always succeeds."""
    log.debug("no cleanup needed, nothing to release")