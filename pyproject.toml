[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dsskit"
version = "0.1.0"
description = "Building blocks for distributed-systems work: a protobuf-style codec, a simulated in-process RPC network and a linearizability checker"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "distributed-systems",
    "rpc",
    "simulation",
    "linearizability",
    "protobuf",
    "testing",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["dsskit"]

[tool.hatch.build.targets.sdist]
include = [
    "dsskit",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
