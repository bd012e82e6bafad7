"""Cgroup, eBPF device-filter, TLS and request helpers for mounting devices into running Kubernetes containers."""

__version__ = "0.1.0"