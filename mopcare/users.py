"""User accounts HTTP service."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from flask import Flask, Response, jsonify, request
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    exists,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from mopcare.courses import (
    _INT64_MAX,
    _INT64_MIN,
    _ApiError,
    _configure,
    _database,
    _format_time,
    _require_id,
    _run_service,
)

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("first_name", Text),
    Column("last_name", Text),
    Column("email", Text),
    Column("total_amount_paid", Numeric(asdecimal=False)),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)

enrollments_table = Table(
    "user_course_enrollments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer),
    Column("course_id", Integer),
    Column("status", Text),
)

_USER_COLUMNS = (
    users_table.c.id,
    users_table.c.first_name,
    users_table.c.last_name,
    users_table.c.email,
    users_table.c.total_amount_paid,
    users_table.c.created_at,
)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_T = TypeVar("_T")


def _number(value: float) -> int | float:
    """Render integral floats without a fractional part, as JSON encoders commonly do."""
    if value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _optional(data: dict[str, Any], **values: Any) -> dict[str, Any]:
    """Add to ``data`` only the values that are set."""
    data.update({name: value for name, value in values.items() if value})
    return data


@dataclass
class User:
    id: int = 0
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    total_amount_paid: float = 0.0
    created_at: datetime = _ZERO_TIME
    enrolled_courses: str = ""
    completed_courses_count: int = 0
    state: str = ""
    city: str = ""

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "total_amount_paid": _number(float(self.total_amount_paid or 0.0)),
            "created_at": _format_time(self.created_at),
        }
        return _optional(
            data,
            enrolled_courses=self.enrolled_courses,
            completed_courses_count=self.completed_courses_count,
            state=self.state,
            city=self.city,
        )


class _BodyError(ValueError):
    """The request body could not be decoded."""


def _body_object() -> dict[str, Any]:
    raw = request.get_data(as_text=True).lstrip()
    if not raw:
        raise _BodyError("empty body")
    try:
        data, _ = json.JSONDecoder().raw_decode(raw)
    except ValueError as exc:
        raise _BodyError(str(exc)) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _BodyError("body is not an object")
    return data


def _read_body(build: Callable[[dict[str, Any]], _T]) -> _T:
    try:
        return build(_body_object())
    except _BodyError as exc:
        raise _ApiError(400, "Invalid request body") from exc


def _field(data: dict[str, Any], name: str, default: Any, types: Any, description: str) -> Any:
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, types):
        raise _BodyError(f"field {name} must be {description}")
    return value


def _string(data: dict[str, Any], name: str) -> str:
    return _field(data, name, "", str, "a string")


def _integer(data: dict[str, Any], name: str) -> int:
    value = _field(data, name, 0, int, "an integer")
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise _BodyError(f"field {name} is out of range")
    return value


def _real(data: dict[str, Any], name: str) -> float:
    return float(_field(data, name, 0.0, (int, float), "a number"))


def _timestamp(data: dict[str, Any], name: str) -> datetime:
    value = _field(data, name, None, str, "a timestamp string")
    if value is None:
        return _ZERO_TIME
    text_value = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        moment = datetime.fromisoformat(text_value)
    except ValueError as exc:
        raise _BodyError(str(exc)) from exc
    if moment.tzinfo is None:
        raise _BodyError(f"field {name} lacks a time zone")
    return moment


def _user_from_body(data: dict[str, Any]) -> User:
    return User(
        id=_integer(data, "id"),
        first_name=_string(data, "first_name"),
        last_name=_string(data, "last_name"),
        email=_string(data, "email"),
        total_amount_paid=_real(data, "total_amount_paid"),
        created_at=_timestamp(data, "created_at"),
        enrolled_courses=_string(data, "enrolled_courses"),
        completed_courses_count=_integer(data, "completed_courses_count"),
        state=_string(data, "state"),
        city=_string(data, "city"),
    )


def _user_from_row(row: Any) -> User:
    return User(
        id=row["id"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
        email=row["email"] or "",
        total_amount_paid=float(row["total_amount_paid"] or 0.0),
        created_at=row["created_at"],
    )


def _count_enrollments(connection: Connection, *conditions: Any) -> int:
    query = select(func.count()).select_from(enrollments_table).where(*conditions)
    return int(connection.execute(query).scalar_one())


def enrolled_courses_count(connection: Connection, user_id: int) -> int:
    """Count every enrollment of the user."""
    return _count_enrollments(connection, enrollments_table.c.user_id == user_id)


def completed_courses_count(connection: Connection, user_id: int) -> int:
    """Count the user's enrollments whose status is completed."""
    return _count_enrollments(
        connection,
        enrollments_table.c.user_id == user_id,
        enrollments_table.c.status == "completed",
    )


def _user_missing(key: str = "message") -> _ApiError:
    return _ApiError(404, "User not found", key=key)


def create_app(engine: Engine) -> Flask:
    """Build the user service application bound to ``engine``."""
    app = Flask(__name__)
    _configure(app)

    def _page_not_found(_exc):
        return Response("404 page not found", status=404, mimetype="text/plain")

    app.register_error_handler(404, _page_not_found)
    app.register_error_handler(405, _page_not_found)

    def _fetch_user(user_id: int) -> User:
        with _database(), engine.connect() as connection:
            row = connection.execute(
                select(*_USER_COLUMNS).where(users_table.c.id == user_id)
            ).mappings().first()
        if row is None:
            raise _user_missing()
        return _user_from_row(row)

    def _count(counter: Callable[[Connection, int], int], user_id: int, failure: str) -> int:
        with _database(failure), engine.connect() as connection:
            return counter(connection, user_id)

    @app.get("/health")
    def health():
        return jsonify(service="user-service", status="running")

    @app.get("/users")
    def list_users():
        with _database(), engine.connect() as connection:
            rows = connection.execute(select(*_USER_COLUMNS)).mappings().all()
        if not rows:
            raise _ApiError(404, "No users found", key="message")
        return jsonify([_user_from_row(row).to_json() for row in rows])

    @app.get("/users/<user_id>")
    def get_user(user_id: str):
        return jsonify(_fetch_user(_require_id(user_id, "user")).to_json())

    @app.post("/users")
    def create_user():
        user = _read_body(_user_from_body)
        if not user.first_name or not user.last_name or not user.email:
            raise _ApiError(400, "First name, last name, and email are required")
        with _database(), engine.begin() as connection:
            taken = connection.execute(
                select(exists().where(users_table.c.email == user.email))
            ).scalar_one()
            if taken:
                raise _ApiError(400, "User with this email already exists")
            result = connection.execute(
                users_table.insert().values(
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email,
                    total_amount_paid=user.total_amount_paid,
                )
            )
            user.id = result.inserted_primary_key[0]
            user.created_at = connection.execute(
                select(users_table.c.created_at).where(users_table.c.id == user.id)
            ).scalar_one()
        return jsonify(user.to_json()), 201

    @app.delete("/users/<user_id>")
    def delete_user(user_id: str):
        parsed = _require_id(user_id, "user")
        with _database(), engine.begin() as connection:
            affected = connection.execute(
                users_table.delete().where(users_table.c.id == parsed)
            ).rowcount
        if affected == 0:
            raise _user_missing()
        return jsonify(message="User deleted successfully")

    @app.get("/users/<user_id>/profile")
    def user_profile(user_id: str):
        parsed = _require_id(user_id, "user")
        user = _fetch_user(parsed)
        enrolled = _count(enrolled_courses_count, parsed, "Failed to count enrollments")
        completed = _count(completed_courses_count, parsed, "Failed to count completed courses")
        profile: dict[str, Any] = {
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "total_amount_paid": _number(user.total_amount_paid),
            "enrolled_courses_count": enrolled,
            "completed_courses_count": completed,
        }
        return jsonify(_optional(profile, state=user.state, city=user.city))

    @app.put("/users/<user_id>/payment")
    def update_payment(user_id: str):
        parsed = _require_id(user_id, "user")
        amount = _read_body(lambda data: _real(data, "amount"))
        if amount <= 0:
            raise _ApiError(400, "Amount must be positive")
        with _database(), engine.begin() as connection:
            present = connection.execute(
                select(exists().where(users_table.c.id == parsed))
            ).scalar_one()
            if not present:
                raise _user_missing(key="error")
            affected = connection.execute(
                users_table.update()
                .where(users_table.c.id == parsed)
                .values(total_amount_paid=users_table.c.total_amount_paid + amount)
            ).rowcount
        if affected == 0:
            raise _user_missing(key="error")
        return jsonify(message="Payment updated successfully")

    return app


def main(argv: list[str] | None = None) -> None:
    """Connect to the database and serve the user API."""
    _run_service(
        argv,
        factory=create_app,
        prog="mopcare-users",
        description="User service.",
        port_variable="USER_SERVICE_PORT",
        default_port="8082",
        title="User service",
        start_failure="Failed to start user service",
    )