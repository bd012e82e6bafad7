# devmounter

A library of building blocks for attaching devices, such as GPUs, NPUs and
other character or block devices, to containers that are already running in
a Kubernetes pod. Pods, nodes and containers are handled as plain dicts in
the shape of their Kubernetes JSON.

## Modules

- **`devmounter.cgroup`**
  - `get_k8s_pod_cgroup_path(pod, container_name, cgroup_driver, old_version)`
    returns the cgroup path of a container relative to the hierarchy root, for
    the `SYSTEMD` or `CGROUPFS` driver. `get_device_group_path_v1` and
    `get_group_path_v2` turn that path into an absolute one.
  - `get_pod_qos` computes a pod's QoS class from its cpu and memory.
  - `to_systemd`, `expand_slice`, `convert_path` and `parse_runtime` are the
    helpers these functions use.
  - `add_device_permission` and `remove_device_permission` write a rule to a
    cgroup v1 `devices.allow` or `devices.deny` file.
  - `NsenterConfig` builds an `nsenter` command line (`build_args`) and runs a
    program in a target process's namespaces (`execute`).
  - `add_device_file`, `remove_device_file` and `kill_running_processes` use
    `NsenterConfig` to run `mknod`, `rm` and `kill` inside the container.
  - `DeviceInfo` describes a device node. Its `rule` property gives the
    matching `devmounter.ebpf.Rule`.
  - `can_skip_ebpf_error` and `is_rwm` decide whether a failed filter load
    can be ignored.
- **`devmounter.ebpf`**: edits the instruction list of a cgroup v2
  device-filter program, held as `Instruction` values.
  - `load_instructions` copies a program and drops its trailing default-deny
    block.
  - `Instructions.append_rule` adds a `Rule`, or replaces an earlier block for
    the same device.
  - `Instructions.groups` splits the program into exit-terminated blocks.
  - `Instructions.finalize` appends the default-deny block again.
- **`devmounter.tlsconfig`**: `TlsWatch` loads a YAML TLS profile, with the
  keys `ciphers` and `minTLSVersion`, and a PEM certificate/key pair.
  - `get_config` returns a `TlsConfig`, or raises the error that prevents one.
  - `add_to_filewatch` registers reload callbacks with a `FileWatch`.
  - `get_cipher_suites`, `get_min_tls_version` and `load_certificates` can
    also be called directly.
- **`devmounter.filewatch`**: `FileWatch.add(path, callback)` registers a
  callback. `FileWatch.run(done)` calls it when something under the path is
  created, modified, deleted or moved, and keeps running until the
  `threading.Event` `done` is set.
- **`devmounter.framework`**: the `DeviceMounter` base class and a
  `MounterRegistry` of mounter factories. Module-level functions cover a
  default registry: `add_device_mounter_func`, `register_device_mounters`,
  `get_device_mounter_types` and `get_device_mounter`.
- **`devmounter.labeller`**
  - `compute_label_patches` builds the JSON patch operations that keep a
    node's `<prefix>/<device type>` labels set to `"true"` for the given
    device types.
  - `cleanup_label_patches` builds the operations that remove them all.
  - `NodeLabeller` applies these patches periodically through `get_node` and
    `patch_node` callables that you supply.
- **`devmounter.apiserver`**
  - `read_mount_request_parameters` and `read_unmount_request_parameters`
    validate and collect the parameters of mount and unmount requests.
  - `check_request` checks the user, group and extra authentication headers.
  - `parse_label_selector` parses `key=value,...` selectors.
  - `find_mounter_pod` picks the ready mounter pod on a node.
  - Failures raise `RequestError`, which carries an HTTP status.
- **`devmounter.mounter`**
  - `check_mount_device_request` and `check_unmount_device_request` validate
    requests.
  - `check_pod_container` and `check_pod_container_status` check the target
    container.
  - `apply_json_patch` and `patch_pod` apply JSON patches.
  - `mutate_pod` marks a device slave pod with owner references, labels and
    annotations.
  - `filter_slave_pods` selects slave pods by device type.
  - Failures raise `MounterError`, which carries a `ResultCode`.
- **`devmounter.util`**
  - `parse_quantity` parses resource quantities such as `"500m"` or `"1Gi"`.
  - `check_resources_in_node` and `check_resources_in_slice` check requested
    resources.
  - `new_device_slave_pod` builds a slave pod template.
  - `get_device_file_version` and `get_device_file_version_v2` read the
    major and minor numbers of a device node.
  - `exec_dynamic_bind_volume` runs the bind-volume script named by
    `DYNAMIC_BIND_VOLUME_SCRIPT`, or `/scripts/dynamic_bind_volume.sh` when
    that variable is not set.
- **`devmounter.versions`**: `adjust_command`, `adjust_version` and
  `adjust_commit` format build information.

## Installation

```
pip install devmounter
```

Python 3.10 or newer is required. Device and cgroup operations work only on
Linux, with root privileges.

## Examples

Add a rule to a device-filter program:

```python
from devmounter.ebpf import Rule, load_instructions
from devmounter.util import DeviceType

program = load_instructions(current_instructions)
program.append_rule(Rule(type=DeviceType.CHAR, major=195, minor=0,
                         permissions="rw", allow=True))
program.finalize()
```

Keep TLS settings up to date. `auth_config` must provide `get_client_ca()`.

```python
import threading

from devmounter.filewatch import FileWatch
from devmounter.tlsconfig import TlsWatch

watch = FileWatch()
tls = TlsWatch("/etc/config", "tls-profile.yaml",
               "/etc/certs", "tls.crt", "tls.key", auth_config)
tls.add_to_filewatch(watch)
tls.reload()

done = threading.Event()
threading.Thread(target=watch.run, args=(done,), daemon=True).start()
config = tls.get_config()
```

## What the package does not do

- It has no command-line program.
- It does not serve HTTP or gRPC.
- It does not talk to the Kubernetes API itself. Pods and nodes are passed in
  as dicts, and patches go out through the callables you supply.
- It does not load or attach eBPF programs in the kernel. `devmounter.ebpf`
  only edits instruction lists.
- It ships no device-specific `DeviceMounter` implementations.

## Tests

```
pip install -e ".[test]"
pytest
```