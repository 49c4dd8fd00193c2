from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main
import panel
from database import MemoryStore, get_db
from realtime import ConnectionManager, get_connection_manager
from security import create_access_token


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def connections():
    return ConnectionManager()


@pytest.fixture()
def notify(monkeypatch):
    mock = MagicMock(return_value=True)
    monkeypatch.setattr(panel, "notify_new_order", mock)
    return mock


@pytest.fixture()
def client(store, connections, tmp_path, monkeypatch):
    monkeypatch.setattr(panel, "UPLOAD_DIR", str(tmp_path / "uploads"))
    main.app.dependency_overrides[get_db] = lambda: store
    main.app.dependency_overrides[get_connection_manager] = lambda: connections
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_access_token(data={'sub': user_id})}"}


@pytest.fixture()
def make_user(client):
    """Sign a user up through the API and return (user_id, auth headers)."""

    def _make(first_name="Ada", last_name="Lovelace", password="secret1", **extra):
        r = client.post(
            "/api/signup",
            json={"first_name": first_name, "last_name": last_name, "password": password, **extra},
        )
        assert r.status_code == 201, r.text
        user_id = r.json()["userId"]
        return user_id, auth_headers(user_id)

    return _make


@pytest.fixture()
def admin(make_user, store):
    user_id, headers = make_user("Root", "Admin", email="root@example.com")
    store.update_one("user", {"id": user_id}, {"role": "admin"})
    return user_id, headers
