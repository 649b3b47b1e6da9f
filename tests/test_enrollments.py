import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from mopcare import courses, users
from mopcare.enrollments import Enrollment, create_app


def _memory_engine():
    return create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
def engine():
    eng = _memory_engine()
    users.metadata.create_all(eng)
    courses.metadata.create_all(eng)
    with eng.begin() as connection:
        connection.execute(
            users.users_table.insert().values(
                first_name="Margaret",
                last_name="Johnson",
                email="margaret@example.com",
                total_amount_paid=0,
            )
        )
        connection.execute(
            courses.courses_table.insert().values(
                title="Heart Health After 65",
                content="Essential cardiovascular care for seniors",
                overview_video_url="",
                cover_image_url="",
                unique_id="heart-health-seniors",
            )
        )
    yield eng
    eng.dispose()


@pytest.fixture
def client(engine):
    return create_app(engine).test_client()


def _body(user_id=1, course_id=1, status="enrolled"):
    return {"user_id": user_id, "course_id": course_id, "status": status}


def test_enrollment_to_json_keeps_field_order():
    data = Enrollment(id=4, user_id=1, course_id=2, status="completed").to_json()
    assert list(data) == ["id", "user_id", "course_id", "status"]
    assert data["status"] == "completed"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"service": "enrollment-service", "status": "running"}


def test_unknown_route_is_plain_404(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.get_data(as_text=True) == "404 page not found"


def test_create_then_list(client):
    created = client.post("/users/1/enrollments", json=_body())
    assert created.status_code == 201
    payload = created.get_json()
    assert payload["user_id"] == 1
    assert payload["course_id"] == 1
    assert payload["status"] == "enrolled"

    listed = client.get("/users/1/enrollments")
    assert listed.status_code == 200
    assert listed.get_json() == [payload]


def test_list_empty_is_404(client):
    response = client.get("/users/1/enrollments")
    assert response.status_code == 404
    assert response.get_json() == {"message": "No enrollments found for this user"}


@pytest.mark.parametrize("raw", ["abc", "1.5", ""])
def test_list_invalid_user_id(client, raw):
    response = client.get(f"/users/{raw}x/enrollments" if raw == "" else f"/users/{raw}/enrollments")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid user ID"}


def test_create_invalid_user_id(client):
    response = client.post("/users/abc/enrollments", json=_body())
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid user ID"}


def test_create_invalid_body(client):
    response = client.post(
        "/users/1/enrollments", data="not json", content_type="application/json"
    )
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid request body"}


def test_create_wrong_field_type(client):
    response = client.post("/users/1/enrollments", json=_body(user_id="1"))
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid request body"}


@pytest.mark.parametrize(
    "body",
    [_body(user_id=0), _body(course_id=0), _body(status=""), {}],
)
def test_create_missing_fields(client, body):
    response = client.post("/users/1/enrollments", json=body)
    assert response.status_code == 400
    assert response.get_json() == {"error": "User ID, Course ID, and Status are required"}


def test_create_user_mismatch(client):
    response = client.post("/users/2/enrollments", json=_body(user_id=1))
    assert response.status_code == 400
    assert response.get_json() == {"error": "User ID in body must match URL parameter"}


def test_create_bad_status(client):
    response = client.post("/users/1/enrollments", json=_body(status="dropped"))
    assert response.status_code == 400
    assert response.get_json() == {"error": "Status must be 'enrolled' or 'completed'"}


def test_create_unknown_user(client):
    response = client.post("/users/9/enrollments", json=_body(user_id=9))
    assert response.status_code == 400
    assert response.get_json() == {"error": "User does not exist"}


def test_create_unknown_course(client):
    response = client.post("/users/1/enrollments", json=_body(course_id=9))
    assert response.status_code == 400
    assert response.get_json() == {"error": "Course does not exist"}


def test_create_duplicate(client):
    assert client.post("/users/1/enrollments", json=_body()).status_code == 201
    again = client.post("/users/1/enrollments", json=_body(status="completed"))
    assert again.status_code == 400
    assert again.get_json() == {"error": "User is already enrolled in this course"}


def test_delete_then_missing(client):
    created = client.post("/users/1/enrollments", json=_body()).get_json()
    deleted = client.delete(f"/enrollments/{created['id']}")
    assert deleted.status_code == 200
    assert deleted.get_json() == {"message": "Enrollment deleted successfully"}

    again = client.delete(f"/enrollments/{created['id']}")
    assert again.status_code == 404
    assert again.get_json() == {"message": "Enrollment not found"}


def test_delete_invalid_id(client):
    response = client.delete("/enrollments/abc")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid enrollment ID"}


def test_database_error_reported():
    eng = _memory_engine()
    client = create_app(eng).test_client()
    response = client.get("/users/1/enrollments")
    assert response.status_code == 500
    assert "error" in response.get_json()
    eng.dispose()