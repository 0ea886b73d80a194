[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imgsync"
version = "0.1.0"
description = "Database-driven file transfer: change sniffing, a leased job queue, lease recovery and streaming local/FTP transfers."
requires-python = ">=3.10"
dependencies = []
keywords = ["ftp", "file-transfer", "job-queue", "sync", "streaming", "watermark"]
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
    "Topic :: Internet :: File Transfer Protocol (FTP)",
    "Topic :: System :: Archiving :: Mirroring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["imgsync"]

[tool.pytest.ini_options]
addopts = "-ra"
