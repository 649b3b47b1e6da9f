"""Course and series HTTP service."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from flask import Flask, Response, jsonify, request
from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from mopcare.db import DatabaseConfigError, connect_database, resolve_database_url

metadata = MetaData()

courses_table = Table(
    "courses",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("title", Text),
    Column("content", Text),
    Column("overview_video_url", Text),
    Column("cover_image_url", Text),
    Column("unique_id", Text),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)

series_table = Table(
    "series",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("course_id", Integer),
    Column("title", Text),
    Column("description", Text),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)

_COURSE_FIELDS = ("title", "content", "overview_video_url", "cover_image_url", "unique_id")
_SERIES_FIELDS = ("title", "description")
_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1


def _format_time(moment: datetime) -> str:
    """Render a timestamp in RFC 3339 form with trimmed fractional seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    rendered = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        rendered += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return rendered + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{rendered}{sign}{hours:02d}:{minutes:02d}"


@dataclass
class Course:
    id: int
    title: str
    content: str
    overview_video_url: str
    cover_image_url: str
    unique_id: str
    created_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "overview_video_url": self.overview_video_url,
            "cover_image_url": self.cover_image_url,
            "unique_id": self.unique_id,
            "created_at": _format_time(self.created_at),
        }


@dataclass
class Series:
    id: int
    course_id: int
    title: str
    description: str
    created_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "course_id": self.course_id,
            "title": self.title,
            "description": self.description,
            "created_at": _format_time(self.created_at),
        }


class _ApiError(Exception):
    """A request that ends with a JSON error body and a status code."""

    def __init__(self, status: int, text: str, key: str = "error") -> None:
        super().__init__(text)
        self.status = status
        self.text = text
        self.key = key


@contextmanager
def _database(failure: str | None = None) -> Iterator[None]:
    """Turn database failures into a 500 reply, with ``failure`` as its text if given."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise _ApiError(500, failure or str(exc)) from exc


def _parse_id(raw: str) -> int | None:
    if not _INT_PATTERN.fullmatch(raw):
        return None
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def _require_id(raw: str, label: str) -> int:
    parsed = _parse_id(raw)
    if parsed is None:
        raise _ApiError(400, f"Invalid {label} ID")
    return parsed


def _parse_body(fields: tuple[str, ...]) -> dict[str, str]:
    mimetype = request.mimetype or ""
    if mimetype.endswith("json"):
        try:
            data = json.loads(request.get_data(as_text=True))
        except ValueError as exc:
            raise _ApiError(400, str(exc)) from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise _ApiError(400, f"cannot unmarshal {type(data).__name__} into an object")
        parsed = {}
        for field in fields:
            value = data.get(field)
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise _ApiError(
                    400, f"cannot unmarshal {type(value).__name__} into field {field} of type string"
                )
            parsed[field] = value
        return parsed
    if mimetype in ("application/x-www-form-urlencoded", "multipart/form-data"):
        return {field: request.form.get(field, "") for field in fields}
    raise _ApiError(400, "Unprocessable Entity")


def _configure(app: Flask) -> None:
    """Apply the JSON, routing and error settings shared by the services."""
    app.json.sort_keys = False
    app.url_map.strict_slashes = False

    @app.errorhandler(_ApiError)
    def _api_error(exc: _ApiError):
        return jsonify({exc.key: exc.text}), exc.status


def _insert(engine: Engine, table: Table, values: dict[str, Any]) -> tuple[int, datetime]:
    """Insert a row and return its new id and creation time."""
    with _database(), engine.begin() as connection:
        new_id = connection.execute(table.insert().values(**values)).inserted_primary_key[0]
        created_at = connection.execute(
            select(table.c.created_at).where(table.c.id == new_id)
        ).scalar_one()
    return new_id, created_at


def _list(engine: Engine, query, model: type):
    with _database(), engine.connect() as connection:
        rows = connection.execute(query).mappings().all()
    return jsonify([model(**row).to_json() for row in rows] if rows else None)


def _add_item_routes(
    app: Flask,
    engine: Engine,
    prefix: str,
    label: str,
    table: Table,
    model: type,
    fields: tuple[str, ...],
) -> None:
    """Register the read, update and delete routes of one resource."""
    title = label.capitalize()

    def fetch(item_id: str):
        parsed = _require_id(item_id, label)
        with _database(), engine.connect() as connection:
            row = connection.execute(select(table).where(table.c.id == parsed)).mappings().first()
        if row is None:
            raise _ApiError(404, f"{title} not found")
        return jsonify(model(**row).to_json())

    def update(item_id: str):
        parsed = _require_id(item_id, label)
        body = _parse_body(fields)
        with _database(f"Failed to update {label}"), engine.begin() as connection:
            connection.execute(table.update().where(table.c.id == parsed).values(**body))
        return jsonify(message=f"{title} updated successfully")

    def remove(item_id: str):
        parsed = _require_id(item_id, label)
        with _database(f"Failed to delete {label}"), engine.begin() as connection:
            connection.execute(table.delete().where(table.c.id == parsed))
        return jsonify(message=f"{title} deleted successfully")

    rule = f"{prefix}/<item_id>"
    for action, view, method in (("get", fetch, "GET"), ("update", update, "PUT"), ("delete", remove, "DELETE")):
        app.add_url_rule(rule, f"{action}_{label}", view, methods=[method])


def create_app(engine: Engine) -> Flask:
    """Build the course service application bound to ``engine``."""
    app = Flask(__name__)
    _configure(app)

    @app.after_request
    def _server_header(response: Response) -> Response:
        response.headers["Server"] = "Course-Service"
        return response

    @app.errorhandler(404)
    def _not_found(_exc):
        return Response(f"Cannot {request.method} {request.path}", status=404, mimetype="text/plain")

    @app.get("/health")
    def health():
        return jsonify(service="course-service", status="running")

    @app.post("/courses")
    def create_course():
        body = _parse_body(_COURSE_FIELDS)
        if not body["title"] or not body["content"]:
            raise _ApiError(400, "Title and content are required")
        new_id, created_at = _insert(engine, courses_table, body)
        return jsonify(Course(id=new_id, created_at=created_at, **body).to_json()), 201

    @app.get("/courses")
    def list_courses():
        return _list(engine, select(courses_table), Course)

    @app.get("/courses/<course_id>/series")
    def list_series(course_id: str):
        parsed = _require_id(course_id, "course")
        query = select(series_table).where(series_table.c.course_id == parsed)
        return _list(engine, query, Series)

    @app.post("/courses/<course_id>/series")
    def create_series(course_id: str):
        parsed = _require_id(course_id, "course")
        body = _parse_body(_SERIES_FIELDS)
        if not body["title"]:
            raise _ApiError(400, "Title is required")
        values = {"course_id": parsed, **body}
        new_id, created_at = _insert(engine, series_table, values)
        return jsonify(Series(id=new_id, created_at=created_at, **values).to_json()), 201

    _add_item_routes(app, engine, "/courses", "course", courses_table, Course, _COURSE_FIELDS)
    _add_item_routes(app, engine, "/series", "series", series_table, Series, _SERIES_FIELDS)
    return app


def _run_service(
    argv: list[str] | None,
    *,
    factory: Callable[[Engine], Flask],
    prog: str,
    description: str,
    port_variable: str,
    default_port: str,
    title: str,
    start_failure: str | None = None,
) -> None:
    """Parse arguments, connect to the database and serve the application."""
    argparse.ArgumentParser(prog=prog, description=description).parse_args(argv)

    try:
        engine = connect_database(resolve_database_url())
    except DatabaseConfigError as exc:
        raise SystemExit(f"Database connection failed: {exc}") from exc

    port = os.environ.get(port_variable) or default_port
    print(f"{title} starting on port {port}", file=sys.stderr)
    try:
        factory(engine).run(host="0.0.0.0", port=int(port))
    except OSError as exc:
        if start_failure is None:
            raise
        raise SystemExit(f"{start_failure}: {exc}") from exc
    finally:
        engine.dispose()


def main(argv: list[str] | None = None) -> None:
    """Connect to the database and serve the course API."""
    _run_service(
        argv,
        factory=create_app,
        prog="mopcare-courses",
        description="Course service.",
        port_variable="COURSE_SERVICE_PORT",
        default_port="8081",
        title="Course service",
    )