[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "envscaledown"
version = "0.1.0"
description = "Scale a Kubernetes environment down to zero and back up in a controlled startup order"
requires-python = ">=3.10"
keywords = ["kubernetes", "scaling", "cost-saving", "cronjob", "new-relic", "slack"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests>=2.28",
    "pyyaml>=6.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
envscaledown = "envscaledown.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["envscaledown"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
