[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "awgtun"
version = "0.1.0"
description = "TUN device interface, Internet checksums and virtio-net GSO splitting and TCP/UDP GRO coalescing"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "gso", "gro", "virtio", "checksum", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
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
packages = ["awgtun"]

[tool.pytest.ini_options]
addopts = "-ra"
