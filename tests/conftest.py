import pytest
from fastapi.testclient import TestClient

from mindprint.db import Store
from mindprint.log_backends import MemoryMirror
from mindprint.main import create_app

from telemetry_samples import make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(database_path=str(tmp_path / "mindprint.db"))


@pytest.fixture
def store(settings):
    store = Store(settings.database_path)
    yield store
    store.close()


@pytest.fixture
def mirror():
    return MemoryMirror()


@pytest.fixture
def client(settings, store, mirror):
    app = create_app(settings, store=store, mirror=mirror)
    return TestClient(app)
