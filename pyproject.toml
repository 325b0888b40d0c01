[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clusteradmit"
version = "0.1.0"
description = "Admission rules for namespace and secret resources, with RBAC rule resolution from role template bindings."
requires-python = ">=3.10"
dependencies = []
keywords = ["admission", "webhook", "rbac", "kubernetes", "pod-security", "authorization"]
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
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["clusteradmit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
