import json
import logging

import mongomock
import pytest
from flask_jwt_extended import create_access_token

import image_relay as image_relay_module
from app import create_app
from image_relay import ImageRelay

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload or {})

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class RecordingPost:
    """Stands in for ``requests.post`` and remembers what was sent."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def __call__(self, url, data=None, files=None, timeout=None):
        uploaded = files["file"].read() if files else b""
        self.calls.append({"url": url, "data": dict(data or {}), "content": uploaded, "timeout": timeout})
        if self.error is not None:
            raise self.error
        if self.response is not None:
            return self.response
        if url.endswith("/image/destroy"):
            return FakeResponse(200, {"result": "ok"})
        public_id = f"{data['folder']}/{data['public_id']}"
        return FakeResponse(
            200,
            {
                "public_id": public_id,
                "secure_url": f"https://res.cloudinary.com/demo/image/upload/v1/{public_id}.png",
            },
        )


@pytest.fixture
def database():
    return mongomock.MongoClient().flashmart


@pytest.fixture
def relay():
    return ImageRelay("demo", "123456", "shhh", logging.getLogger("tests.image_relay"))


@pytest.fixture
def fake_post(monkeypatch):
    recorder = RecordingPost()
    monkeypatch.setattr(image_relay_module.requests, "post", recorder)
    return recorder


@pytest.fixture
def upload_folder(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def app(database, relay, upload_folder):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_SECRET,
            "BCRYPT_ROUNDS": 4,
            "UPLOAD_FOLDER": str(upload_folder),
            "CLOUDINARY_FOLDER": "flashmart/products",
        },
        database=database,
        image_relay=relay,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    with app.app_context():
        token = create_access_token(identity="seller@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def product_payload():
    return {
        "title": "Trail Runner",
        "desc": "Lightweight running shoe",
        "category": "shoes",
        "price": 59.99,
        "rating": 4.5,
        "isTrending": True,
        "isFlashSale": False,
    }
