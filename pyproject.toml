[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tus_s3store"
version = "0.1.0"
description = "A tus resumable-upload storage backend built on S3 multipart uploads"
requires-python = ">=3.10"
dependencies = []
keywords = ["tus", "s3", "upload", "resumable", "multipart", "storage"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tus_s3store"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
