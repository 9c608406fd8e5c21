[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubesync"
version = "0.1.0"
description = "Phased, wave-ordered synchronisation of Kubernetes-style resources with hooks and pruning"
requires-python = ">=3.10"
keywords = ["kubernetes", "gitops", "sync", "hooks", "waves", "pruning"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
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
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubesync"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
