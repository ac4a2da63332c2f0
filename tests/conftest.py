import pytest
from fastapi.testclient import TestClient

from db_models import LinkPrecedence
from db_setup import ContactStore, get_db_connection, init_db
from resolver import IdentityResolver


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    """Store on a fresh database file; writes outside a transaction autocommit."""
    conn = get_db_connection(db_path)
    yield ContactStore(conn)
    conn.close()


@pytest.fixture
def resolver(store: ContactStore) -> IdentityResolver:
    return IdentityResolver(store)


@pytest.fixture
def client(db_path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("DATABASE_PATH", db_path)

    from settings import get_settings

    get_settings.cache_clear()

    from main import app

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def seed_primary(store: ContactStore, email=None, phone=None):
    return store.create_contact(email, phone)


def seed_secondary(store: ContactStore, primary_id: int, email=None, phone=None):
    return store.create_contact(email, phone, primary_id, LinkPrecedence.SECONDARY)


def set_created_at(store: ContactStore, contact_id: int, created_at: str) -> None:
    store.connection.execute(
        "UPDATE Contact SET createdAt = ? WHERE id = ?", (created_at, contact_id)
    )
