[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dynacli"
version = "0.1.0"
description = "Dynamics 365 tools: stored configuration, a Web API client for FetchXML queries, and metadata, view and form parsing"
requires-python = ">=3.11"
keywords = ["dynamics", "dynamics365", "crm", "fetchxml", "odata", "cli"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business",
]
dependencies = [
    "requests",
    "platformdirs",
    "tomli-w",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
dynacli-settings = "dynacli.settings:main"

[tool.hatch.build.targets.wheel]
packages = ["dynacli"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
