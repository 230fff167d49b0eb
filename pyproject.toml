[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cankit"
version = "0.1.0"
description = "CAN bus tools: frame length and bus load estimation, bit timing calculation, a broadcast manager TCP server and a full-duplex echo test"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "can",
    "can-bus",
    "canfd",
    "socketcan",
    "bit-timing",
    "bus-load",
    "broadcast-manager",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
bitcalc = "cankit.bitcalc:main"
busload = "cankit.busload:main"
bcmserver = "cankit.bcmserver:main"
fdtest = "cankit.fdtest:main"

[tool.hatch.build.targets.wheel]
packages = ["cankit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
