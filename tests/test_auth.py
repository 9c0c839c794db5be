import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from shadowquill import create_app
from shadowquill.config import TestConfig
from shadowquill.extensions import db
from shadowquill.models import User


@pytest.fixture
def app_instance():
    app = create_app(TestConfig)
    app.config["WTF_CSRF_ENABLED"] = False
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


def test_api_register_creates_user(client):
    response = client.post(
        "/api/auth/register",
        json={"email": " Writer@Example.com ", "password": "secret123", "name": "Quill"},
    )

    assert response.status_code == 201
    data = response.get_json()
    assert data["email"] == "writer@example.com"
    assert data["name"] == "Quill"
    assert "password" not in data
    assert User.query.filter_by(email="writer@example.com").first().check_password("secret123")


def test_api_register_validates_input(client):
    assert client.post("/api/auth/register", json={"email": "a@example.com"}).status_code == 400
    assert client.post("/api/auth/register", json={"password": "x"}).status_code == 400
    assert client.post("/api/auth/register", data="not json").status_code == 400


def test_api_register_rejects_duplicates(client):
    client.post("/api/auth/register", json={"email": "a@example.com", "password": "secret123"})

    response = client.post("/api/auth/register", json={"email": "A@example.com", "password": "other"})

    assert response.status_code == 409
    assert response.get_json()["error"] == "User already exists."


def test_register_form_and_login(client):
    response = client.post(
        "/register",
        data={
            "display_name": "Quill",
            "email": "quill@example.com",
            "password": "password123",
            "confirm_password": "password123",
        },
    )
    assert response.status_code == 302

    login = client.post(
        "/login",
        data={"email": "quill@example.com", "password": "password123"},
        follow_redirects=True,
    )
    assert login.status_code == 200
    assert b"Welcome back, Quill!" in login.data


def test_login_rejects_wrong_password(client):
    client.post("/api/auth/register", json={"email": "a@example.com", "password": "secret123"})

    response = client.post("/login", data={"email": "a@example.com", "password": "nope"})

    assert b"Invalid email or password." in response.data


def test_login_ignores_external_next(client):
    client.post("/api/auth/register", json={"email": "a@example.com", "password": "secret123"})

    response = client.post(
        "/login?next=//evil.example.com/",
        data={"email": "a@example.com", "password": "secret123"},
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")


def test_logout_requires_login_again(client):
    client.post("/api/auth/register", json={"email": "a@example.com", "password": "secret123"})
    client.post("/login", data={"email": "a@example.com", "password": "secret123"})

    client.get("/logout")

    assert client.get("/api/stories").status_code == 401
