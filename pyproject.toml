[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "toyseq"
version = "0.1.0"
description = "A small UDP multicast sequencer with ping/pong, market-data and event-capture applications"
requires-python = ">=3.10"
dependencies = []
keywords = ["sequencer", "multicast", "udp", "protobuf", "market-data", "server-sent-events"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Office/Business :: Financial :: Investment",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
toyseq-sequencer = "toyseq.sequencer:main"
toyseq-ping = "toyseq.ping:main"
toyseq-pong = "toyseq.pong:main"
toyseq-scrappy = "toyseq.scrappy:main"
toyseq-md = "toyseq.marketdata:main"

[tool.hatch.build.targets.wheel]
packages = ["toyseq"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
