[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "siptransport"
version = "0.1.0"
description = "SIP message transports over UDP, TCP, TLS, WebSocket and secure WebSocket"
requires-python = ">=3.10"
dependencies = []
keywords = ["sip", "voip", "transport", "udp", "tcp", "tls", "websocket"]
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
    "Topic :: Communications :: Internet Phone",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["siptransport*"]

[tool.pytest.ini_options]
addopts = "-ra"
