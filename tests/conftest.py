import pytest
from fastapi.testclient import TestClient

from api_server import app, get_settings, get_store
from config import Settings
from supabase_store import StoreError

VALID_TOKEN = "test-shared-secret"


class FakeStore:
    """In-memory stand-in for both Supabase tables."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.logs: list[dict] = []
        self.upsert_calls = 0
        self.fail_upsert = False
        self.fail_log = False

    def upsert_user_by_email(self, record):
        self.upsert_calls += 1
        if self.fail_upsert:
            raise StoreError("duplicate key value violates unique constraint")
        row = record.model_dump(mode="json")
        self.users[row["email"]] = row
        return row

    def append_webhook_log(self, entry):
        if self.fail_log:
            raise StoreError("relation \"webhook_logs\" does not exist")
        self.logs.append(entry.model_dump(mode="json"))


@pytest.fixture
def settings():
    return Settings(webhook_token=VALID_TOKEN, supabase_url=None, supabase_key=None)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client(store, settings):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
