[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcpclient"
version = "0.1.0"
description = "Client for the Model Context Protocol over stdio, SSE and streamable HTTP transports"
requires-python = ">=3.10"
keywords = ["mcp", "model context protocol", "json-rpc", "sse", "client"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
mcpclient = "mcpclient.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["mcpclient"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
