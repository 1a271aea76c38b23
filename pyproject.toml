[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "redcluster"
version = "0.1.0"
description = "Command objects, reply parsing and slot-based node routing for a Redis Cluster client"
requires-python = ">=3.10"
keywords = ["redis", "cluster", "client", "resp", "sharding", "hash-slot"]
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
    "Topic :: Database :: Front-Ends",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["redcluster"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
