"""Request parsing and checks of the device-mount HTTP API."""

import copy
import json
import logging
import re
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = 10
_INT32_MAX = 2**31 - 1
_INT32_MIN = -(2**31)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class RequestError(Exception):
    """A request that cannot be served, with the HTTP status to answer with."""

    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass
class MountParams:
    """Parameters of a mount request."""

    name: str
    namespace: str
    device_type: str
    container: str = ""
    timeout_seconds: int = DEFAULT_WAIT_SECONDS
    resources: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    labels: dict = field(default_factory=dict)
    patches: list = field(default_factory=list)


@dataclass
class UnmountParams:
    """Parameters of an unmount request."""

    name: str
    namespace: str
    device_type: str
    container: str = ""
    timeout_seconds: int = DEFAULT_WAIT_SECONDS
    force: bool = False


def _first(mapping, key):
    value = (mapping or {}).get(key, "")
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value or ""


def _values(value):
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def get_wait_timeout_second(query):
    """Timeout in seconds from the ``wait_second`` query parameter; 10 by default."""
    raw = _first(query, "wait_second")
    if raw == "":
        return DEFAULT_WAIT_SECONDS
    if not _INTEGER_RE.fullmatch(raw):
        raise RequestError(400, f"failed to parse timeout: invalid syntax: {raw!r}")
    timeout = int(raw)
    if not _INT32_MIN <= timeout <= _INT32_MAX:
        raise RequestError(400, f"failed to parse timeout: value out of range: {raw!r}")
    if timeout < 0:
        raise RequestError(400, "the timeout value can only be a positive integer")
    return timeout


def _common_params(path_params, query):
    namespace = _first(path_params, "namespace").strip()
    name = _first(path_params, "name").strip()
    if not namespace or not name:
        raise RequestError(400, "namespace and name parameters are required")
    container = _first(query, "container").strip()
    dev_type = _first(query, "device_type").strip()
    if not dev_type:
        raise RequestError(400, "device_type parameters are required")
    return namespace, name, container, dev_type, get_wait_timeout_second(query)


def _string_map(data, key):
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise RequestError(400, f"json: field {key!r} must be an object of strings")
    return dict(value)


def _parse_mount_body(body):
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as err:
        raise RequestError(400, f"invalid request body: {err}") from err
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RequestError(400, "json: request body must be an object")
    patches = data.get("patches")
    if patches is None:
        patches = []
    elif not isinstance(patches, list) or not all(isinstance(p, str) for p in patches):
        raise RequestError(400, "json: field 'patches' must be a list of strings")
    return (
        _string_map(data, "resources"),
        _string_map(data, "annotations"),
        _string_map(data, "labels"),
        list(patches),
    )


def read_mount_request_parameters(path_params, query, body):
    """Validate and collect the parameters of a mount request."""
    namespace, name, container, dev_type, timeout = _common_params(path_params, query)
    resources, annotations, labels, patches = _parse_mount_body(body)
    return MountParams(
        name=name,
        namespace=namespace,
        device_type=dev_type,
        container=container,
        timeout_seconds=timeout,
        resources=resources,
        annotations=annotations,
        labels=labels,
        patches=patches,
    )


def read_unmount_request_parameters(path_params, query):
    """Validate and collect the parameters of an unmount request."""
    namespace, name, container, dev_type, timeout = _common_params(path_params, query)
    force = _first(query, "force").lower() == "true"
    return UnmountParams(
        name=name,
        namespace=namespace,
        device_type=dev_type,
        container=container,
        timeout_seconds=timeout,
        force=force,
    )


def get_auth_username(headers, user_headers):
    """The user name from the first configured user header present."""
    for header in user_headers:
        if header in headers:
            values = _values(headers[header])
            if values:
                return values[0]
    raise RequestError(400, "a valid user header is required")


def get_auth_groups(headers, group_headers):
    """All groups from the configured group headers; at least one must be present."""
    groups = []
    found = False
    for header in group_headers:
        if header in headers:
            found = True
            groups.extend(_values(headers[header]))
    if not found:
        raise RequestError(400, "a valid group header is required")
    return groups


def get_auth_extra_headers(headers, prefixes):
    """Extra user attributes from headers with a configured prefix, prefix removed."""
    extras = {}
    for key, values in headers.items():
        for prefix in prefixes:
            if key.startswith(prefix):
                extras[key[len(prefix):]] = _values(values)
                break
    return extras


def check_request(headers, auth_config):
    """Check the authentication headers; return ``(user, groups)``."""
    try:
        user = get_auth_username(headers, auth_config.get_user_headers())
        log.debug("Visiting users %s", user)
        groups = get_auth_groups(headers, auth_config.get_group_headers())
        log.debug("Auth groups %s", groups)
        get_auth_extra_headers(headers, auth_config.get_extra_header_prefixes())
    except RequestError:
        raise
    except Exception as err:
        raise RequestError(400, str(err)) from err
    return user, groups


def parse_label_selector(selector):
    """Parse ``key=value,key=value`` into a label set; malformed parts are ignored."""
    labels = {}
    for part in selector.strip().split(","):
        pieces = part.strip().split("=")
        if len(pieces) > 1:
            labels[pieces[0].strip()] = pieces[1].strip()
    return labels


def find_mounter_pod(pods, node_name):
    """The running, ready mounter pod on a node, as a copy."""
    found = None
    for pod in pods:
        spec = pod.get("spec") or {}
        status = pod.get("status") or {}
        if spec.get("nodeName") == node_name and status.get("phase") == "Running":
            for container_status in status.get("containerStatuses") or []:
                if not container_status.get("ready"):
                    raise RequestError(
                        500, f"the device mounter is not ready on the target node {node_name}"
                    )
            found = copy.deepcopy(pod)
            break
    if found is None:
        raise RequestError(500, f"there is no device mounter on the target node {node_name}")
    return found