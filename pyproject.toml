[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "datatransfer"
version = "0.1.0"
description = "Data transfer protocol messages, voucher registry, stream networking and push channel monitoring"
requires-python = ">=3.10"
dependencies = [
    "cbor2",
]
keywords = ["data-transfer", "cbor", "protocol", "networking", "p2p"]
classifiers = [
    "Development Status :: 3 - Alpha",
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
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["datatransfer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
