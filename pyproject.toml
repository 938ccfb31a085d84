[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trafficmanager"
version = "0.1.0"
description = "Domain models and cron-driven synchronisation services for ad, sales and store-ranking insights."
requires-python = ">=3.10"
dependencies = []
keywords = ["insights", "scheduler", "cron", "advertising", "sales", "ranking"]
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
    "Topic :: Office/Business :: Scheduling",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["trafficmanager"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
