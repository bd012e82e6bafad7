[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "devmounter"
version = "0.1.0"
description = "Helpers for attaching devices to running Kubernetes containers: cgroup paths and device rules, eBPF device-filter editing, TLS profile watching and request checks"
requires-python = ">=3.10"
keywords = ["kubernetes", "cgroup", "ebpf", "devices", "gpu", "containers", "tls"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml",
    "watchdog",
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["devmounter"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
