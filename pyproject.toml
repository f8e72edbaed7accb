[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardkv"
version = "0.1.0"
description = "Building blocks of a sharded key/value service: shard configurations, shard group servers and clerks, a lease-based shard controller and a UNIX-socket RPC layer"
requires-python = ">=3.10"
dependencies = []
keywords = ["key-value", "sharding", "distributed-systems", "rpc", "reconfiguration", "lease"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["shardkv"]

[tool.pytest.ini_options]
addopts = "-ra"
