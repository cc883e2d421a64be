[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ibazel"
version = "0.1.0"
description = "Drive Bazel builds and keep a target's process running across source changes"
requires-python = ">=3.10"
dependencies = []
keywords = ["bazel", "bazelisk", "build", "rebuild", "subprocess"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ibazel"]

[tool.pytest.ini_options]
addopts = "-ra"
