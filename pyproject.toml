[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cloudprober"
version = "0.1.0"
description = "Metrics model, system variable export, metric surfacers and probe-target servers for active monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "probing", "prometheus", "stackdriver", "metrics", "udp", "http"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cloudprober-udp-server = "cloudprober.servers.udp:main"

[tool.hatch.build.targets.wheel]
packages = ["cloudprober"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
