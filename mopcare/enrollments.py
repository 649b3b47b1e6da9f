"""Course enrollment HTTP service."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Any

from flask import Flask, Response, jsonify, request
from sqlalchemy import exists, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from mopcare.courses import _parse_id, courses_table
from mopcare.db import DatabaseConfigError, connect_database, resolve_database_url
from mopcare.users import (
    _body_object,
    _BodyError,
    _integer,
    _string,
    enrollments_table,
    users_table,
)

_STATUSES = ("enrolled", "completed")


@dataclass
class Enrollment:
    id: int = 0
    user_id: int = 0
    course_id: int = 0
    status: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "status": self.status,
        }


def _enrollment_from_body(data: dict[str, Any]) -> Enrollment:
    return Enrollment(
        id=_integer(data, "id"),
        user_id=_integer(data, "user_id"),
        course_id=_integer(data, "course_id"),
        status=_string(data, "status"),
    )


def _error(status: int, message: str):
    return jsonify(error=message), status


def _message(status: int, message: str):
    return jsonify(message=message), status


def create_app(engine: Engine) -> Flask:
    """Build the enrollment service application bound to ``engine``."""
    app = Flask(__name__)
    app.json.sort_keys = False
    app.url_map.strict_slashes = False

    def _page_not_found(_exc):
        return Response("404 page not found", status=404, mimetype="text/plain")

    app.register_error_handler(404, _page_not_found)
    app.register_error_handler(405, _page_not_found)

    @app.get("/health")
    def health():
        return jsonify(service="enrollment-service", status="running")

    @app.get("/users/<user_id>/enrollments")
    def list_enrollments(user_id: str):
        parsed = _parse_id(user_id)
        if parsed is None:
            return _error(400, "Invalid user ID")
        try:
            with engine.connect() as connection:
                rows = connection.execute(
                    select(
                        enrollments_table.c.id,
                        enrollments_table.c.user_id,
                        enrollments_table.c.course_id,
                        enrollments_table.c.status,
                    ).where(enrollments_table.c.user_id == parsed)
                ).mappings().all()
        except SQLAlchemyError as exc:
            return _error(500, str(exc))
        if not rows:
            return _message(404, "No enrollments found for this user")
        enrollments = [
            Enrollment(
                id=row["id"],
                user_id=row["user_id"],
                course_id=row["course_id"],
                status=row["status"] or "",
            )
            for row in rows
        ]
        return jsonify([enrollment.to_json() for enrollment in enrollments])

    @app.post("/users/<user_id>/enrollments")
    def create_enrollment(user_id: str):
        parsed = _parse_id(user_id)
        if parsed is None:
            return _error(400, "Invalid user ID")
        try:
            enrollment = _enrollment_from_body(_body_object())
        except _BodyError:
            return _error(400, "Invalid request body")
        if not enrollment.user_id or not enrollment.course_id or not enrollment.status:
            return _error(400, "User ID, Course ID, and Status are required")
        if enrollment.user_id != parsed:
            return _error(400, "User ID in body must match URL parameter")
        if enrollment.status not in _STATUSES:
            return _error(400, "Status must be 'enrolled' or 'completed'")
        try:
            with engine.begin() as connection:
                user_present = connection.execute(
                    select(exists().where(users_table.c.id == enrollment.user_id))
                ).scalar_one()
                if not user_present:
                    return _error(400, "User does not exist")
                course_present = connection.execute(
                    select(exists().where(courses_table.c.id == enrollment.course_id))
                ).scalar_one()
                if not course_present:
                    return _error(400, "Course does not exist")
                already = connection.execute(
                    select(
                        exists().where(
                            (enrollments_table.c.user_id == enrollment.user_id)
                            & (enrollments_table.c.course_id == enrollment.course_id)
                        )
                    )
                ).scalar_one()
                if already:
                    return _error(400, "User is already enrolled in this course")
                result = connection.execute(
                    enrollments_table.insert().values(
                        user_id=enrollment.user_id,
                        course_id=enrollment.course_id,
                        status=enrollment.status,
                    )
                )
                enrollment.id = result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            return _error(500, str(exc))
        return jsonify(enrollment.to_json()), 201

    @app.delete("/enrollments/<enrollment_id>")
    def delete_enrollment(enrollment_id: str):
        parsed = _parse_id(enrollment_id)
        if parsed is None:
            return _error(400, "Invalid enrollment ID")
        try:
            with engine.begin() as connection:
                result = connection.execute(
                    enrollments_table.delete().where(enrollments_table.c.id == parsed)
                )
                affected = result.rowcount
        except SQLAlchemyError as exc:
            return _error(500, str(exc))
        if affected == 0:
            return _message(404, "Enrollment not found")
        return jsonify(message="Enrollment deleted successfully")

    return app


def main(argv: list[str] | None = None) -> None:
    """Connect to the database and serve the enrollment API."""
    parser = argparse.ArgumentParser(
        prog="mopcare-enrollments", description="Enrollment service."
    )
    parser.parse_args(argv)

    try:
        engine = connect_database(resolve_database_url())
    except DatabaseConfigError as exc:
        raise SystemExit(f"Database connection failed: {exc}") from exc

    port = os.environ.get("ENROLLMENT_SERVICE_PORT") or "8083"
    print(f"Enrollment service starting on port {port}", file=sys.stderr)
    try:
        create_app(engine).run(host="0.0.0.0", port=int(port))
    except OSError as exc:
        raise SystemExit(f"Failed to start enrollment service: {exc}") from exc
    finally:
        engine.dispose()