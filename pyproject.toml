[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshctl"
version = "0.1.0"
description = "Service-mesh control logic: protocol detection, EnvoyFilter generation, VIP allocation and meta-protocol route caching"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "service-mesh",
    "envoy",
    "xds",
    "rds",
    "envoyfilter",
    "dubbo",
    "thrift",
    "redis",
    "control-plane",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
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
packages = ["meshctl"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
