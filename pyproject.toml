[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshagent"
version = "0.1.0"
description = "Node agent core: content-addressed artifact storage, component supervision and fleet health reporting"
requires-python = ">=3.11"
dependencies = []
keywords = ["agent", "supervisor", "fleet", "health", "content-addressable", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["meshagent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"
