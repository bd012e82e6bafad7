"""Checks and pod manipulation used when mounting devices into running containers."""

import copy
import enum
import json
import logging
import uuid
from dataclasses import dataclass

from devmounter.util import LABEL_HOSTNAME, is_sidecar

log = logging.getLogger(__name__)


class ResultCode(enum.Enum):
    """Outcome of a mount or unmount request."""

    SUCCESS = "Success"
    FAIL = "Fail"
    NOT_FOUND = "NotFound"
    INVALID = "Invalid"
    DEVICE_BUSY = "DeviceBusy"


class MounterError(Exception):
    """An error that carries the result code to report to the caller."""

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class Container:
    """A container of a pod, identified by name or, when the name is empty, by index."""

    name: str = ""
    index: int = 0


@dataclass(frozen=True)
class MutationKeys:
    """Label and annotation keys, and image settings, applied to device slave pods."""

    device_type_annotation: str
    container_id_annotation: str
    created_by_label: str
    owner_name_label: str
    owner_uid_label: str
    mount_container_label: str
    app_component_label: str
    app_managed_by_label: str
    manager_name: str
    image: str
    pull_policy: str


def _metadata(pod):
    return pod.get("metadata") or {}


def check_pod_container_status(pod, container):
    """Raise unless the named container of the pod is ready."""
    for status in (pod.get("status") or {}).get("containerStatuses") or []:
        if status.get("name") == container.name and status.get("ready"):
            return
    raise MounterError(ResultCode.FAIL, f"The target container {container.name} is not ready")


def check_pod_container(pod, container):
    """Resolve the target container of a pod; sidecars cannot be targeted."""
    if pod is None:
        raise MounterError(ResultCode.INVALID, "The target pod is empty")
    containers = (pod.get("spec") or {}).get("containers") or []
    if container is None:
        if len(containers) == 1:
            return Container(name=containers[0].get("name", ""), index=0)
        raise MounterError(
            ResultCode.INVALID,
            "Pod has multiple containers, target container must be specified",
        )
    for i, spec in enumerate(containers):
        by_name = spec.get("name") == container.name
        by_index = container.name == "" and container.index == i
        if not (by_name or by_index):
            continue
        if is_sidecar(spec):
            raise MounterError(ResultCode.INVALID, "Target container is a sidecar container")
        if by_name:
            return Container(name=container.name, index=i)
        return Container(name=spec.get("name", ""), index=container.index)
    raise MounterError(ResultCode.INVALID, f"Target container {container} not found")


def _missing_params(req, names):
    missing = [f"'{name}'" for name in names if not req.get(name)]
    if missing:
        raise MounterError(
            ResultCode.INVALID, f"Parameters {','.join(missing)} cannot be empty"
        )


def check_mount_device_request(req):
    """Validate a mount request dict and fill in defaults; return it."""
    _missing_params(req, ("pod_name", "pod_namespace", "resources"))
    if req.get("container") is None:
        req["container"] = Container(index=0)
    if req.get("annotations") is None:
        req["annotations"] = {}
    if req.get("labels") is None:
        req["labels"] = {}
    return req


def check_unmount_device_request(req):
    """Validate an unmount request dict and fill in defaults; return it."""
    _missing_params(req, ("pod_name", "pod_namespace"))
    if req.get("container") is None:
        req["container"] = Container(index=0)
    return req


def _parse_pointer(path):
    if not isinstance(path, str):
        raise ValueError(f"invalid JSON pointer: {path!r}")
    if path == "":
        return []
    if not path.startswith("/"):
        raise ValueError(f"JSON pointer must start with '/': {path!r}")
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def _array_index(token, length, allow_end):
    if allow_end and token == "-":
        return length
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise ValueError(f"invalid array index: {token!r}")
    index = int(token)
    limit = length if allow_end else length - 1
    if index > limit:
        raise ValueError(f"array index out of bounds: {index}")
    return index


def _child(node, token):
    if isinstance(node, dict):
        if token not in node:
            raise ValueError(f"doc is missing key: {token}")
        return node[token]
    if isinstance(node, list):
        return node[_array_index(token, len(node), False)]
    raise ValueError(f"cannot index into {type(node).__name__} with {token!r}")


def _resolve(doc, tokens):
    node = doc
    for token in tokens:
        node = _child(node, token)
    return node


def _add(doc, tokens, value):
    if not tokens:
        return value
    parent = _resolve(doc, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        parent[last] = value
    elif isinstance(parent, list):
        parent.insert(_array_index(last, len(parent), True), value)
    else:
        raise ValueError(f"add operation does not apply: cannot add to {type(parent).__name__}")
    return doc


def _remove(doc, tokens):
    if not tokens:
        raise ValueError("remove operation does not apply: cannot remove the whole document")
    parent = _resolve(doc, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        if last not in parent:
            raise ValueError(f"remove operation does not apply: doc is missing path: {last}")
        return parent.pop(last)
    if isinstance(parent, list):
        return parent.pop(_array_index(last, len(parent), False))
    raise ValueError(f"remove operation does not apply: cannot remove from {type(parent).__name__}")


def _replace(doc, tokens, value):
    if not tokens:
        return value
    parent = _resolve(doc, tokens[:-1])
    last = tokens[-1]
    if isinstance(parent, dict):
        if last not in parent:
            raise ValueError(f"replace operation does not apply: doc is missing key: {last}")
        parent[last] = value
    elif isinstance(parent, list):
        parent[_array_index(last, len(parent), False)] = value
    else:
        raise ValueError(f"replace operation does not apply: cannot replace in {type(parent).__name__}")
    return doc


def _value(operation):
    if "value" not in operation:
        raise ValueError(f"operation {operation.get('op')!r} requires a value")
    return copy.deepcopy(operation["value"])


def apply_json_patch(doc, patches):
    """Apply JSON patch operations to a copy of ``doc`` and return the result."""
    result = copy.deepcopy(doc)
    for operation in patches:
        if not isinstance(operation, dict) or "op" not in operation:
            raise ValueError(f"invalid patch operation: {operation!r}")
        op = operation["op"]
        tokens = _parse_pointer(operation.get("path"))
        if op == "add":
            result = _add(result, tokens, _value(operation))
        elif op == "remove":
            _remove(result, tokens)
        elif op == "replace":
            result = _replace(result, tokens, _value(operation))
        elif op in ("move", "copy"):
            source = _parse_pointer(operation.get("from"))
            if op == "move":
                if tokens[: len(source)] == source and len(tokens) > len(source):
                    raise ValueError("move operation cannot move a value into one of its children")
                value = _remove(result, source) if source else result
            else:
                value = copy.deepcopy(_resolve(result, source))
            result = _add(result, tokens, value)
        elif op == "test":
            if _resolve(result, tokens) != operation.get("value"):
                raise ValueError(f"testing value {operation.get('path')} failed")
        else:
            raise ValueError(f"unexpected kind of operation: {op!r}")
    return result


def patch_pod(pod, patches):
    """Apply JSON patch operations, each given as a JSON string, to a pod."""
    if not patches:
        return pod
    log.debug("patching target pod patches: %s", patches)
    document = "[\n" + ",\n".join(patches) + "\n]"
    try:
        operations = json.loads(document)
    except json.JSONDecodeError as err:
        raise MounterError(
            ResultCode.FAIL, f"Cannot decode pod patches {document}: {err}"
        ) from err
    try:
        patched = apply_json_patch(pod, operations)
    except ValueError as err:
        raise MounterError(
            ResultCode.FAIL, f"Failed to apply patch for Pod {document}: {err}"
        ) from err
    if not isinstance(patched, dict):
        raise MounterError(
            ResultCode.FAIL, f"Cannot unmarshal modified marshalled Pod {json.dumps(patched)}"
        )
    log.debug("Patching target pod completed. Modified pod: %s", patched)
    return patched


def owner(pod, controller):
    """Owner references that make ``pod`` the owner of another object."""
    meta = _metadata(pod)
    return [
        {
            "apiVersion": "v1",
            "kind": "Pod",
            "name": meta.get("name", ""),
            "uid": meta.get("uid", ""),
            "blockOwnerDeletion": True,
            "controller": controller,
        }
    ]


def mutate_pod(dev_type, container, owner_pod, pod, node_name, keys):
    """Bind a device slave pod to its owner and node; modifies ``pod`` and returns it."""
    meta = pod.setdefault("metadata", {})
    spec = pod.setdefault("spec", {})
    labels = meta.get("labels")
    if labels is None:
        labels = meta["labels"] = {}
    annotations = meta.get("annotations")
    if annotations is None:
        annotations = meta["annotations"] = {}
    node_selector = spec.get("nodeSelector")
    if node_selector is None:
        node_selector = spec["nodeSelector"] = {}

    owner_meta = _metadata(owner_pod)
    meta.pop("deletionTimestamp", None)
    meta["namespace"] = owner_meta.get("namespace", "")

    container_id = next(
        (
            status.get("containerID", "")
            for status in (owner_pod.get("status") or {}).get("containerStatuses") or []
            if status.get("name") == container.name
        ),
        "",
    )
    annotations[keys.device_type_annotation] = dev_type
    annotations[keys.container_id_annotation] = container_id

    node_selector[LABEL_HOSTNAME] = node_name

    labels[keys.created_by_label] = str(uuid.uuid4())
    labels[keys.owner_name_label] = owner_meta.get("name", "")
    labels[keys.owner_uid_label] = owner_meta.get("uid", "")
    labels[keys.mount_container_label] = container.name
    labels[keys.app_component_label] = keys.manager_name
    labels[keys.app_managed_by_label] = keys.manager_name

    # Not a controller reference: batch schedulers derive pod groups from controllers.
    meta["ownerReferences"] = owner(owner_pod, False)
    for spec_container in spec.get("containers") or []:
        spec_container["image"] = keys.image
        spec_container["imagePullPolicy"] = keys.pull_policy
    spec["terminationGracePeriodSeconds"] = 0
    return pod


def filter_slave_pods(pods, dev_type, annotation_key):
    """Copies of the pods whose device-type annotation equals ``dev_type``."""
    result = []
    for pod in pods:
        meta = _metadata(pod)
        annotations = meta.get("annotations") or {}
        if annotations.get(annotation_key) == dev_type:
            result.append(copy.deepcopy(pod))
        else:
            log.debug(
                "Skipped old slave pod: %s/%s", meta.get("namespace", ""), meta.get("name", "")
            )
    return result