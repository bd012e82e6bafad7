import subprocess
from unittest import mock

import pytest

from devmounter.cgroup import (
    CGROUPFS,
    SYSTEMD,
    CgroupError,
    DeviceInfo,
    NsenterConfig,
    NsenterError,
    add_device_file,
    add_device_permission,
    can_skip_ebpf_error,
    convert_path,
    expand_slice,
    get_device_group_path_v1,
    get_group_path_v2,
    get_k8s_pod_cgroup_path,
    get_pod_qos,
    is_rwm,
    kill_running_processes,
    nil_closer,
    parse_runtime,
    remove_device_file,
    remove_device_permission,
    systemd_path_prefix_of_runtime,
    to_systemd,
)
from devmounter.ebpf import Rule


def _done(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _pod(qos=None, resources=None, container_id="containerd://abc123"):
    status = {"containerStatuses": [{"name": "main", "containerID": container_id}]}
    if qos:
        status["qosClass"] = qos
    container = {"name": "main"}
    if resources:
        container["resources"] = resources
    return {
        "metadata": {"name": "demo", "uid": "1234"},
        "spec": {"containers": [container]},
        "status": status,
    }


def test_build_args_requires_target():
    with pytest.raises(ValueError, match="Target must be specified"):
        NsenterConfig().build_args()


def test_build_args_mount_namespace():
    args = NsenterConfig(target=42, mount=True).build_args()
    assert args == ["nsenter", "--target", "42", "--mount"]


def test_build_args_with_files_and_ids():
    args = NsenterConfig(target=7, net=True, net_file="/proc/1/ns/net", uid=5, gid=6,
                         working_directory="/tmp").build_args()
    assert "--net=/proc/1/ns/net" in args
    assert args[args.index("--setuid") + 1] == "5"
    assert args[args.index("--setgid") + 1] == "6"
    assert args[-2:] == ["--wd", "/tmp"]


@mock.patch("subprocess.run")
def test_execute_appends_program(run):
    run.return_value = _done(stdout="hi\n")
    config = NsenterConfig(target=9, mount=True)
    out, err = config.execute("echo", "hi")
    assert (out, err) == ("hi\n", "")
    assert run.call_args.args[0] == config.build_args() + ["echo", "hi"]


@mock.patch("subprocess.run")
def test_execute_failure_raises_with_output(run):
    run.return_value = _done(returncode=1, stderr="boom")
    with pytest.raises(NsenterError) as info:
        NsenterConfig(target=9).execute("false")
    assert info.value.stderr == "boom"


def test_execute_without_target_raises():
    with pytest.raises(NsenterError, match="Target must be specified"):
        NsenterConfig().execute("true")


@mock.patch("subprocess.run")
def test_add_device_file_runs_mknod(run):
    run.return_value = _done()
    info = DeviceInfo("/dev/nvidia0", "c", 195, 0, "rw", True)
    result = add_device_file(NsenterConfig(target=3, mount=True), info)
    assert result is None
    cmd = run.call_args.args[0]
    assert cmd[-3:-1] == ["sh", "-c"]
    assert cmd[-1] == "mknod -m 666 /dev/nvidia0 c 195 0"


@mock.patch("subprocess.run")
def test_add_device_file_skips_denied(run):
    result = add_device_file(NsenterConfig(target=3), DeviceInfo("/dev/x", "c", 1, 2, "rw", False))
    assert result is None
    assert run.call_count == 0


@mock.patch("subprocess.run")
def test_remove_device_file(run):
    run.return_value = _done()
    first = remove_device_file(NsenterConfig(target=3), DeviceInfo("/dev/x", "c", 1, 2, "rw", False))
    assert first is None
    assert run.call_args.args[0][-1] == "rm /dev/x"
    second = remove_device_file(NsenterConfig(target=3), DeviceInfo("/dev/y", "c", 1, 2, "rw", True))
    assert second is None
    assert run.call_count == 1


@mock.patch("subprocess.run")
def test_kill_running_processes(run):
    run.return_value = _done()
    result = kill_running_processes(NsenterConfig(target=3), [10, 20])
    assert result is None
    assert run.call_args.args[0][-1] == "kill 10 20"


@mock.patch("subprocess.run")
def test_device_file_failure_propagates(run):
    run.return_value = _done(returncode=2)
    with pytest.raises(NsenterError):
        add_device_file(NsenterConfig(target=3), DeviceInfo("/dev/x", "c", 1, 2, "rw", True))


def test_device_permissions_written(tmp_path):
    info = DeviceInfo("/dev/nvidia0", "c", 195, 0, "rw", True)
    add_device_permission(str(tmp_path), info)
    remove_device_permission(str(tmp_path), info)
    assert (tmp_path / "devices.allow").read_text() == "c 195:0 rw\n"
    assert (tmp_path / "devices.deny").read_text() == "c 195:0 rw\n"


def test_device_permission_missing_dir(tmp_path):
    with pytest.raises(OSError):
        add_device_permission(str(tmp_path / "missing"), DeviceInfo("/dev/x", "c", 1, 2, "rw"))


def test_device_info_rule():
    rule = DeviceInfo("/dev/x", "b", 8, 1, "rwm", True).rule
    assert rule == Rule(type="b", major=8, minor=1, permissions="rwm", allow=True)


def test_group_paths():
    assert get_device_group_path_v1("kubepods/pod1") == "/sys/fs/cgroup/devices/kubepods/pod1"
    assert get_device_group_path_v1("/kubepods") == "/sys/fs/cgroup/devices/kubepods"
    assert get_group_path_v2("kubepods/pod1") == "/sys/fs/cgroup/kubepods/pod1"


def test_pod_qos_classes():
    assert get_pod_qos(_pod()) == "BestEffort"
    same = {"cpu": "1", "memory": "1Gi"}
    assert get_pod_qos(_pod(resources={"limits": same, "requests": same})) == "Guaranteed"
    assert get_pod_qos(_pod(resources={"requests": {"cpu": "100m"}})) == "Burstable"
    assert get_pod_qos(_pod(resources={"limits": {"nvidia.com/gpu": "1"}})) == "BestEffort"


def test_cgroupfs_path():
    path = get_k8s_pod_cgroup_path(_pod(qos="Burstable"), "main", CGROUPFS, False)
    assert path.split("/") == ["kubepods", "burstable", "pod1234", "abc123"]
    guaranteed = get_k8s_pod_cgroup_path(_pod(qos="Guaranteed"), "main", CGROUPFS, False)
    assert guaranteed.split("/") == ["kubepods", "pod1234", "abc123"]


def test_systemd_path_matches_convert_path():
    pod = _pod(qos="BestEffort", container_id="docker://abc123")
    path = get_k8s_pod_cgroup_path(pod, "main", SYSTEMD, False)
    assert path == convert_path("docker", "abc123", ["kubepods", "besteffort", "pod1234"], False)
    assert path.endswith("/abc123")


def test_cgroup_path_errors():
    with pytest.raises(CgroupError):
        get_k8s_pod_cgroup_path(_pod(qos="Burstable"), "other", CGROUPFS, False)
    with pytest.raises(CgroupError):
        get_k8s_pod_cgroup_path(_pod(qos="Burstable"), "main", "unknown", False)


def test_convert_path_containerd():
    cgroups = ["kubepods", "pod-1"]
    new = convert_path("containerd", "abc", cgroups, False)
    assert new.startswith("system.slice/containerd.service/")
    assert new.endswith(":cri-containerd:abc")
    old = convert_path("containerd", "abc", cgroups, True)
    assert old == to_systemd(cgroups, False) + "/cri-containerd-abc.scope"


def test_convert_path_crio():
    path = convert_path("cri-o", "abc", ["kubepods"], False)
    assert path.endswith("/crio-abc.scope")


def test_expand_slice():
    assert expand_slice("-.slice") == "/"
    assert expand_slice("test-a-b.slice") == "/test.slice/test-a.slice/test-a-b.slice"
    for bad in ("test", "test--a.slice", "-test.slice", "a/b.slice", ".slice"):
        with pytest.raises(ValueError):
            expand_slice(bad)


def test_to_systemd():
    assert to_systemd([], False) == "/"
    assert to_systemd([""], True) == "/"
    flat = to_systemd(["kubepods", "pod-1"], True)
    assert flat.endswith(".slice")
    assert "pod_1" in flat
    nested = to_systemd(["kubepods", "pod-1"], False)
    assert nested.endswith("/" + flat)


def test_runtime_prefix():
    assert systemd_path_prefix_of_runtime("cri-o") == "crio"
    assert systemd_path_prefix_of_runtime("containerd") == "cri-containerd"
    assert systemd_path_prefix_of_runtime("docker") == "docker"


def test_parse_runtime():
    assert parse_runtime("containerd://abc") == ("containerd", "abc")
    assert parse_runtime("abc") == ("", "")
    assert parse_runtime("") == ("", "")


def test_is_rwm():
    assert is_rwm("rwm")
    assert is_rwm("mwr")
    assert not is_rwm("rw")


def test_can_skip_ebpf_error():
    allowed = Rule(type="c", major=1, minor=3, permissions="rwm", allow=True)
    assert can_skip_ebpf_error([allowed])
    assert not can_skip_ebpf_error([allowed, Rule(type="c", permissions="rwm", allow=False)])
    assert not can_skip_ebpf_error([Rule(type="c", permissions="rw", allow=True)])


def test_nil_closer():
    assert nil_closer() is None