[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ratelimit"
version = "0.1.0"
description = "Rate limit counting backends for Redis and memcached, with in-process metrics and config update events"
requires-python = ">=3.10"
keywords = ["rate limiting", "redis", "memcached", "throttling", "metrics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ratelimit"]

[tool.pytest.ini_options]
addopts = "-ra"
