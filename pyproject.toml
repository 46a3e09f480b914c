[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mtxrelay"
version = "0.2.5"
description = "Transaction relay building blocks: a JSON-RPC front end, a stake-weighted balancer over connected consumers, Prometheus-style metrics and consumer-side forwarders."
requires-python = ">=3.10"
keywords = [
    "transactions",
    "relay",
    "json-rpc",
    "load-balancing",
    "stake-weighted",
    "prometheus",
    "jwt",
]
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
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "aiohttp>=3.8",
    "pyjwt>=2.6",
    "cryptography>=38",
    "pyyaml>=6.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["mtxrelay"]

[tool.hatch.build.targets.sdist]
include = ["mtxrelay", "tests", "README.md"]

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
ignore_missing_imports = true
