[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "asciicall"
version = "0.1.0"
description = "Terminal video calls rendered as ASCII art, with a small selective forwarding server"
requires-python = ">=3.10"
keywords = ["video-call", "ascii-art", "terminal", "sfu", "webcam", "udp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Conferencing",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "numpy",
    "imageio",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
asciicall = "asciicall.cli:main"
asciicall-server = "asciicall.server:main"

[tool.hatch.build.targets.wheel]
packages = ["asciicall"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
