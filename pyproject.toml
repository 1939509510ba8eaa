[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tapstack"
version = "0.1.0"
description = "A user-space TCP/IP transport layer: sockets, UDP, raw IP and a TCP state machine"
requires-python = ">=3.10"
dependencies = []
keywords = ["tcp", "udp", "ip", "networking", "protocol-stack", "sockets"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tapstack"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
