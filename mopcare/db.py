"""Database URL discovery and connection setup shared by the services."""

from __future__ import annotations

import os
from collections.abc import MutableMapping
from pathlib import Path

from dotenv import dotenv_values
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

ENV_VAR = "SUPABASE_DB_URL"


class DatabaseConfigError(RuntimeError):
    """Raised when the database cannot be located or reached."""


def resolve_database_url(
    environ: MutableMapping[str, str] | None = None,
    env_file: str | os.PathLike[str] = ".env",
) -> str:
    """Return the database URL from the environment, falling back to an env file.

    Values read from the env file are added to ``environ`` without replacing
    variables that are already present.
    """
    env = os.environ if environ is None else environ
    url = env.get(ENV_VAR, "")
    if url:
        return url

    path = Path(env_file)
    if not path.is_file():
        raise DatabaseConfigError(
            "supabase_db_url environment variable is not set and .env file not found"
        )
    for key, value in dotenv_values(path).items():
        if key not in env and value is not None:
            env[key] = value

    url = env.get(ENV_VAR, "")
    if not url:
        raise DatabaseConfigError("supabase_db_url not found in environment or .env")
    return url


def connect_database(url: str) -> Engine:
    """Create an engine for ``url`` and check that the database answers."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    try:
        engine = create_engine(url, pool_pre_ping=True)
    except (ArgumentError, ImportError) as exc:
        raise DatabaseConfigError(f"could not open database connection: {exc}") from exc

    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        engine.dispose()
        raise DatabaseConfigError(f"could not connect to database: {exc}") from exc

    print("Database connection established successfully.")
    return engine