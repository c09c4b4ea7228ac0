"""Shared fixtures.

Every test gets its own data and upload directories under ``tmp_path`` so
that the database and written files never leak between tests.
"""
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app import create_app
from config import Settings
from database import RecordStore, make_engine
from models import User
from security import generate_api_key


def make_image(fmt="PNG", size=(120, 80), color=(30, 120, 200), mode="RGB", **save_args) -> bytes:
    """Encode a solid-colour test image."""
    img = Image.new(mode, size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_args)
    return buf.getvalue()


def make_animated_gif(size=(60, 40), frames=3) -> bytes:
    colors = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0)]
    images = [Image.new("RGB", size, color=colors[i % len(colors)]) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="GIF", save_all=True, append_images=images[1:], duration=100, loop=0)
    return buf.getvalue()


SVG_DOC = (
    b'<?xml version="1.0"?>\n'
    b'<svg xmlns="http://www.w3.org/2000/svg" width="800" height="600" viewBox="0 0 800 600">'
    b'<rect width="800" height="600" fill="#3366cc"/></svg>'
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=tmp_path / "data",
        UPLOAD_DIR=tmp_path / "uploads",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def store(tmp_path):
    (tmp_path / "data").mkdir(exist_ok=True)
    s = RecordStore(make_engine(f"sqlite:///{tmp_path / 'data' / 'store.db'}"))
    s.init()
    return s


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    """Client logged in as the default admin."""
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture
def bob(app):
    """A second user, authenticated by API key."""
    user = User(id="bob-id", username="bob", password_hash=None, api_key=generate_api_key())
    return app.state.store.put_user(user)


def upload(client, data=None, filename="pic.png", content_type="image/png", headers=None, **fields):
    data = make_image() if data is None else data
    form = {k: str(v) for k, v in fields.items()}
    return client.post(
        "/api/upload",
        files={"image": (filename, data, content_type)},
        data=form,
        headers=headers or {},
    )
