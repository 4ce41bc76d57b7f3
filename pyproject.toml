[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rudolph"
version = "0.1.0"
description = "Request handlers for a Santa sensor sync server behind an API Gateway style proxy"
requires-python = ">=3.10"
dependencies = []
keywords = ["santa", "sync-server", "binary-authorization", "api-gateway", "dynamodb"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rudolph"]

[tool.pytest.ini_options]
addopts = "-ra"
