import os
import sys
import tempfile
from pathlib import Path

TEST_ROOT = Path(tempfile.mkdtemp(prefix="qisa-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_ROOT / 'qisa.sqlite3'}"
os.environ["UPLOAD_FOLDER"] = str(TEST_ROOT / "uploads")
os.environ["SECRET_KEY"] = "test-secret"
os.environ["GEMINI_API_KEY"] = "test-key"
os.environ["ADMIN_USERNAME"] = "daniel08"
os.environ["APP_ENV"] = "test"

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from fastapi.testclient import TestClient

import auth
import database
import gemini
from models import Base


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _factory(username="alice", email=None, password="secret1", qkoins=0):
        user = auth.register(db, username, email or f"{username}@x.com", password)
        if qkoins:
            user.qkoins = qkoins
            db.commit()
            db.refresh(user)
        return user
    return _factory


@pytest.fixture
def client():
    import app as app_module
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture
def login(client, make_user):
    """Create a user and log the test client in as them."""
    def _login(username="alice", password="secret1", qkoins=0):
        user = make_user(username=username, password=password, qkoins=qkoins)
        resp = client.post("/api/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return user
    return _login


class FakeGemini:
    """Records gateway calls and returns canned answers."""

    def __init__(self):
        self.calls = []
        self.reply = "Olá! Como posso ajudar?"
        self.image = "data:image/png;base64,aW1hZ2U="
        self.fail = False

    def generate_response(self, message, context=None, username=None, attachments=None):
        self.calls.append(("text", message, list(context or []), username, list(attachments or [])))
        if self.fail:
            raise gemini.GeminiError("boom")
        return self.reply

    def generate_image(self, prompt):
        self.calls.append(("image", prompt))
        if self.fail:
            raise gemini.GeminiError("boom")
        return self.image

    def edit_image(self, image_path, prompt):
        self.calls.append(("edit", str(image_path), prompt))
        if self.fail:
            raise gemini.GeminiError("boom")
        return self.image


@pytest.fixture
def fake_gemini(monkeypatch):
    fake = FakeGemini()
    monkeypatch.setattr(gemini, "generate_response", fake.generate_response)
    monkeypatch.setattr(gemini, "generate_image", fake.generate_image)
    monkeypatch.setattr(gemini, "edit_image", fake.edit_image)
    return fake
