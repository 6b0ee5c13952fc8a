[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "yagpcc"
version = "0.1.0"
description = "Session, running-query and stat-activity tracking core for a Greenplum/Cloudberry query metrics agent"
requires-python = ">=3.10"
keywords = ["greenplum", "cloudberry", "postgresql", "monitoring", "sessions", "pg_stat_activity"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["yagpcc"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
