[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mopcare"
version = "1.0.0"
description = "Course, user and enrollment HTTP services with an API gateway for a health-education platform"
requires-python = ">=3.10"
keywords = ["api-gateway", "flask", "sqlalchemy", "courses", "enrollments"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "flask",
    "sqlalchemy",
    "python-dotenv",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
mopcare-gateway = "mopcare.gateway:main"
mopcare-courses = "mopcare.courses:main"
mopcare-users = "mopcare.users:main"
mopcare-enrollments = "mopcare.enrollments:main"

[tool.hatch.build.targets.wheel]
packages = ["mopcare"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
