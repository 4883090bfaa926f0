import pytest
from fastapi.testclient import TestClient

from redevelopment.api.deps import get_notification_dispatcher
from redevelopment.db.session import get_db
from redevelopment.main import app


@pytest.fixture
def client(db, dispatcher):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
