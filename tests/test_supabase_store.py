import pytest
import requests

import supabase_store
from supabase_store import (
    AccountStatus,
    Plan,
    StoreError,
    SupabaseStore,
    UserAccountRecord,
    WebhookLogEntry,
)


class FakeResponse:
    def __init__(self, status_code=201, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)


@pytest.fixture
def record():
    return UserAccountRecord(
        email="a@b.com",
        plan=Plan.master,
        status=AccountStatus.active,
        updated_at="2026-10-18T12:00:00+00:00",
    )


def _store():
    return SupabaseStore("https://proj.supabase.co", "service-key", timeout=5.0)


def test_upsert_posts_on_conflict_email_with_merge_headers(monkeypatch, record):
    seen = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        seen.update(url=url, json=json, headers=headers, timeout=timeout)
        return FakeResponse(201, [dict(json, id=7)])

    monkeypatch.setattr(supabase_store.requests, "post", fake_post)

    row = _store().upsert_user_by_email(record)

    assert row["id"] == 7
    assert seen["url"] == "https://proj.supabase.co/rest/v1/users?on_conflict=email"
    assert seen["json"] == {
        "email": "a@b.com",
        "plan": "master",
        "status": "active",
        "updated_at": "2026-10-18T12:00:00+00:00",
    }
    assert seen["headers"]["apikey"] == "service-key"
    assert seen["headers"]["Authorization"] == "Bearer service-key"
    assert seen["headers"]["Prefer"] == "resolution=merge-duplicates,return=representation"
    assert seen["timeout"] == 5.0


def test_upsert_http_error_becomes_store_error(monkeypatch, record):
    monkeypatch.setattr(
        supabase_store.requests, "post",
        lambda *a, **kw: FakeResponse(409, text='{"message":"conflict"}'),
    )
    with pytest.raises(StoreError) as exc_info:
        _store().upsert_user_by_email(record)
    assert "conflict" in str(exc_info.value)


def test_upsert_transport_error_becomes_store_error(monkeypatch, record):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(supabase_store.requests, "post", refuse)
    with pytest.raises(StoreError, match="connection refused"):
        _store().upsert_user_by_email(record)


def test_upsert_empty_representation_is_an_error(monkeypatch, record):
    monkeypatch.setattr(supabase_store.requests, "post", lambda *a, **kw: FakeResponse(201, []))
    with pytest.raises(StoreError):
        _store().upsert_user_by_email(record)


def test_missing_credentials_raise_without_network(monkeypatch, record):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(supabase_store.requests, "post", fail)
    with pytest.raises(StoreError, match="credentials"):
        SupabaseStore(None, None).upsert_user_by_email(record)


def test_append_webhook_log_inserts_minimal(monkeypatch):
    seen = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        seen.update(url=url, json=json, headers=headers)
        return FakeResponse(201)

    monkeypatch.setattr(supabase_store.requests, "post", fake_post)

    _store().append_webhook_log(WebhookLogEntry(
        email="a@b.com",
        evento="Order_Paid",
        produto="Plano Master",
        plano_aplicado="Master",
    ))

    assert seen["url"] == "https://proj.supabase.co/rest/v1/webhook_logs"
    assert seen["json"]["evento"] == "Order_Paid"
    assert seen["headers"]["Prefer"] == "return=minimal"
