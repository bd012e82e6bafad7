"""Build version information and helpers to present it."""

BUILD_VERSION = ""
BUILD_COMMIT = ""

_UNKNOWN = "unknown"


def adjust_command(p):
    """Return the last element of a command path, or "unknown" when empty."""
    if not p:
        return _UNKNOWN
    stripped = p.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def adjust_version(v):
    """Return the part of a version string before the first dash."""
    if not v:
        return _UNKNOWN
    return v.split("-", 1)[0]


def adjust_commit(c):
    """Return a commit hash shortened to seven characters."""
    if not c:
        return _UNKNOWN
    return c[:7]