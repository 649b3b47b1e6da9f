"""API gateway that routes requests to the backing services."""

from __future__ import annotations

import argparse
import os
import sys
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests
from flask import Flask, Response, jsonify, request

CACHE_TTL_SECONDS = 300.0

_SERVICE_DEFAULTS = {
    "course": ("COURSE_SERVICE_URL", "http://localhost:8081"),
    "user": ("USER_SERVICE_URL", "http://localhost:8082"),
    "enrollment": ("ENROLLMENT_SERVICE_URL", "http://localhost:8083"),
}

_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "CONNECT", "TRACE"]
_REQUEST_SKIP = frozenset({"host", "content-length", "connection", "transfer-encoding"})
_RESPONSE_SKIP = frozenset(
    {"content-encoding", "content-length", "transfer-encoding", "connection"}
)

_MOCK_COURSES = [
    {
        "id": 1,
        "title": "Managing Diabetes in Your Golden Years",
        "content": "Comprehensive guide to diabetes management for seniors",
        "unique_id": "diabetes-seniors-101",
    },
    {
        "id": 2,
        "title": "Heart Health After 65",
        "content": "Essential cardiovascular care for seniors",
        "unique_id": "heart-health-seniors",
    },
]
_MOCK_USERS = [
    {"id": 1, "first_name": "Margaret", "last_name": "Johnson", "email": "[email]"},
]


class TTLCache:
    """A thread-safe string cache whose entries expire after a fixed time."""

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            data, expires_at = entry
            if self._clock() < expires_at:
                return data
            del self._entries[key]
            return None

    def set(self, key: str, data: str) -> None:
        with self._lock:
            self._entries[key] = (data, self._clock() + self._ttl)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class Metrics:
    """Request and cache counters shared between requests."""

    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def increment_requests(self) -> None:
        with self._lock:
            self.total_requests += 1

    def increment_cache_hits(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def increment_cache_misses(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_requests": self.total_requests,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
            }


def service_urls(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the base URL of each backing service, keyed by service name."""
    env = os.environ if environ is None else environ
    return {
        name: env.get(variable) or default
        for name, (variable, default) in _SERVICE_DEFAULTS.items()
    }


def resolve_target(path: str, environ: Mapping[str, str] | None = None) -> str | None:
    """Return the base URL of the service that handles ``path``, or None."""
    urls = service_urls(environ)
    if path.startswith(("/courses", "/series")):
        return urls["course"]
    if path.startswith("/users") and "/enrollments" not in path:
        return urls["user"]
    if "/enrollments" in path:
        return urls["enrollment"]
    return None


def mock_response(method: str, path: str) -> tuple[int, Any]:
    """Return the status and JSON body served when running as a demo deployment."""
    if path == "/courses":
        if method == "GET":
            return 200, [dict(course) for course in _MOCK_COURSES]
        if method == "POST":
            return 201, {"id": 3, "title": "New Course", "message": "Course created successfully"}
    if path == "/users":
        if method == "GET":
            return 200, [dict(user) for user in _MOCK_USERS]
        if method == "POST":
            return 201, {"id": 2, "first_name": "New User", "message": "User created successfully"}
    return 200, {"message": f"Mock response for {method} {path}"}


def _is_demo_deployment(env: Mapping[str, str]) -> bool:
    return bool(env.get("RENDER_SERVICE_ID") or env.get("RENDER"))


def create_app(
    cache: TTLCache | None = None,
    metrics: Metrics | None = None,
    environ: Mapping[str, str] | None = None,
) -> Flask:
    """Build the gateway application."""
    cache = TTLCache() if cache is None else cache
    metrics = Metrics() if metrics is None else metrics
    env = os.environ if environ is None else environ

    app = Flask(__name__)
    app.url_map.merge_slashes = False

    @app.after_request
    def _server_header(response: Response) -> Response:
        response.headers["Server"] = "Mopcare-Gateway"
        return response

    def _forward(base_url: str, path: str, method: str) -> Response:
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in _REQUEST_SKIP
        }
        try:
            upstream = requests.request(
                method,
                base_url + path,
                headers=headers,
                data=request.get_data(),
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            return Response(str(exc), status=500, mimetype="text/plain")
        response_headers = [
            (name, value)
            for name, value in upstream.headers.items()
            if name.lower() not in _RESPONSE_SKIP
        ]
        return Response(upstream.content, status=upstream.status_code, headers=response_headers)

    def _proxy(path: str, method: str):
        metrics.increment_requests()
        if _is_demo_deployment(env):
            status, body = mock_response(method, path)
            return jsonify(body), status

        base_url = resolve_target(path, env)
        if base_url is None:
            return jsonify(error="Service not found"), 404

        cache_state = None
        if method == "GET":
            cached = cache.get(f"{method}:{path}")
            if cached is not None:
                metrics.increment_cache_hits()
                return Response(cached, mimetype="text/plain", headers={"X-Cache": "HIT"})
            metrics.increment_cache_misses()
            cache_state = "MISS"

        response = _forward(base_url, path, method)
        if cache_state is not None:
            response.headers["X-Cache"] = cache_state
        return response

    @app.route("/", defaults={"rest": ""}, methods=_METHODS)
    @app.route("/<path:rest>", methods=_METHODS)
    def dispatch(rest: str):
        path = request.path
        method = request.method
        if method in ("GET", "HEAD"):
            if path == "/health":
                return jsonify(
                    service="mopcare-api-gateway", status="healthy", version="1.0.0"
                )
            if path == "/metrics":
                return jsonify(gateway=metrics.snapshot())
        return _proxy(path, method)

    return app


def main(argv: list[str] | None = None) -> None:
    """Serve the gateway."""
    parser = argparse.ArgumentParser(prog="mopcare-gateway", description="API gateway.")
    parser.parse_args(argv)

    port = os.environ.get("PORT") or os.environ.get("GATEWAY_PORT") or "10000"
    print(f"Gateway starting on port {port}", file=sys.stderr)
    create_app().run(host="0.0.0.0", port=int(port))