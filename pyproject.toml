[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "odm"
version = "0.1.0"
description = "Segmented, resumable HTTP download manager with a global speed limit and SQLite-backed job state"
requires-python = ">=3.10"
keywords = ["download", "download-manager", "http", "resume", "segmented", "rate-limit", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
]
dependencies = [
    "aiohttp>=3.9",
    "aiosqlite>=0.19",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
odm = "odm.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["odm"]

[tool.hatch.build.targets.sdist]
include = ["odm", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
strict = true
warn_unused_ignores = true
