[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wasmbundle"
version = "0.1.0"
description = "Asset pipelines, tool management, file watching and proxying for WebAssembly web applications"
requires-python = ">=3.10"
keywords = ["wasm", "webassembly", "bundler", "build", "asset-pipeline", "wasm-bindgen", "proxy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Framework :: AsyncIO",
]
dependencies = [
    "aiohttp>=3.8",
    "beautifulsoup4>=4.11",
    "platformdirs>=3.0",
    "watchdog>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
    "aiohttp>=3.8",
    "beautifulsoup4>=4.11",
]

[tool.hatch.build.targets.wheel]
packages = ["wasmbundle"]

[tool.hatch.build.targets.sdist]
include = ["wasmbundle", "tests", "pyproject.toml"]

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
