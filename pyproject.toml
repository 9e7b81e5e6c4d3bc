[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "memtrace"
version = "0.1.0"
description = "Loader and analyzer for binary memory allocation capture files"
requires-python = ">=3.10"
dependencies = [
    "lz4",
]
keywords = ["memory", "profiling", "allocation", "leaks", "capture", "analysis"]
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
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["memtrace"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
