from pathlib import Path
import io
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import bcrypt
import mongomock
import pytest
from PIL import Image

import app as store_app
from app import create_app


class MongomockPyMongo:
    """Stand-in for the Flask-PyMongo extension backed by an in-memory client."""

    client = None

    def __init__(self, app=None, *args, **kwargs):
        self.cx = self.client
        self.db = self.client["clothing_store_test"]


@pytest.fixture()
def mongo_client(monkeypatch):
    client = mongomock.MongoClient()
    monkeypatch.setattr(MongomockPyMongo, "client", client)
    monkeypatch.setattr(store_app, "PyMongo", MongomockPyMongo)
    return client


@pytest.fixture()
def app(tmp_path: Path, mongo_client):
    app = create_app(
        {
            "TESTING": True,
            "APP_ENV": "testing",
            "JWT_SECRET_KEY": "test-jwt-secret-key-with-safe-length-32",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "GOOGLE_CLIENT_ID": "test-client-id.apps.googleusercontent.com",
        }
    )
    yield app


@pytest.fixture()
def db(app, mongo_client):
    return mongo_client["clothing_store_test"]


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def upload_root(app) -> Path:
    return Path(app.config["UPLOAD_FOLDER"])


@pytest.fixture()
def create_user(db):
    def _create_user(
        email: str,
        password: str = "Password123!",
        role: str = "user",
        name: str = "",
        provider: str = "local",
    ) -> str:
        document = {
            "name": name or email.split("@")[0],
            "email": email,
            "role": role,
            "provider": provider,
            "addresses": [],
            "favorites": [],
            "cart": [],
        }
        if provider == "local":
            document["password"] = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        return str(db.users.insert_one(document).inserted_id)

    return _create_user


@pytest.fixture()
def login(client):
    def _login(email: str, password: str = "Password123!") -> dict:
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.get_json()['token']}"}

    return _login


@pytest.fixture()
def admin_headers(create_user, login):
    create_user("admin@example.com", role="admin", name="Admin")
    return login("admin@example.com")


@pytest.fixture()
def user_headers(create_user, login):
    create_user("shopper@example.com", name="Shopper")
    return login("shopper@example.com")


def make_image_bytes(size=(64, 48), color=(200, 30, 30), image_format="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture()
def image_bytes():
    return make_image_bytes
