[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventpipe"
version = "0.1.0"
description = "Route events through pipelines of filters, formatters and sinks"
requires-python = ">=3.10"
dependencies = []
keywords = ["events", "logging", "audit", "pipeline", "cloudevents"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eventpipe"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
