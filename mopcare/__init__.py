"""Course, user and enrollment HTTP services with an API gateway."""

__version__ = "1.0.0"