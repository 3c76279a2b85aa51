[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ratelimitsvc"
version = "0.1.0"
description = "Descriptor-based rate limit configuration, cache keys and limit decisions"
requires-python = ">=3.10"
keywords = ["rate limiting", "ratelimit", "descriptors", "quota", "yaml"]
classifiers = [
    "Development Status :: 4 - Beta",
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
dependencies = [
    "pyyaml>=6.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[project.scripts]
ratelimit-config-check = "ratelimitsvc.config_check:main"

[tool.hatch.build.targets.wheel]
packages = ["ratelimitsvc"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
