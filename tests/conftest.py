import pytest
from fastapi.testclient import TestClient

from database import MemoryStore
from main import app, get_store


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
