"""
supabase_store.py  —  Supabase persistence for plan reconciliation

Two tables, both owned outside this service:

  users          email (unique), plan, status, updated_at
  webhook_logs   email, evento, produto, plano_aplicado, created_at (default NOW())

Only two calls are ever made: an upsert keyed on email and an append-only insert.
Every failure (transport, non-2xx, missing credentials) surfaces as StoreError;
no retries are attempted here, Kiwify re-delivers the webhook on non-2xx.
"""

import logging
from enum import Enum

import requests
from pydantic import BaseModel, ConfigDict, Field

log = logging.getLogger(__name__)


class Plan(str, Enum):
    free   = "free"
    normal = "normal"
    master = "master"


class AccountStatus(str, Enum):
    active    = "active"
    cancelled = "cancelled"
    overdue   = "overdue"


class UserAccountRecord(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    email:      str
    plan:       Plan
    status:     AccountStatus
    updated_at: str = Field(..., description="ISO-8601 UTC timestamp of the reconciliation")


class WebhookLogEntry(BaseModel):
    email:          str
    evento:         str = Field(..., description="Event string exactly as Kiwify sent it")
    produto:        str = ""
    plano_aplicado: str


class StoreError(Exception):
    """Raised for any failed call into Supabase."""


def _build_headers(supabase_key: str, extra: dict = None) -> dict:
    """Construct standard Supabase REST API headers."""
    headers = {
        "apikey":        supabase_key,
        "Authorization": f"Bearer {supabase_key}",
    }
    if extra:
        headers.update(extra)
    return headers


class SupabaseStore:
    """User-state store and event-log store, both backed by Supabase PostgREST."""

    def __init__(self, supabase_url: str | None, supabase_key: str | None, timeout: float | None = 10.0):
        self.supabase_url = supabase_url
        self.supabase_key = supabase_key
        self.timeout      = timeout

    def _post(self, path: str, payload: dict, prefer: str) -> requests.Response:
        if not self.supabase_url or not self.supabase_key:
            raise StoreError("Supabase credentials missing from environment.")

        endpoint = f"{self.supabase_url}/rest/v1/{path}"
        headers  = _build_headers(self.supabase_key, {
            "Content-Type": "application/json",
            "Prefer":       prefer,
        })
        try:
            response = requests.post(endpoint, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            # PostgREST puts the useful part (constraint name, column) in the body
            body = e.response.text if e.response is not None else ""
            raise StoreError(f"{e} {body}".strip()) from e
        except requests.RequestException as e:
            raise StoreError(str(e)) from e
        return response

    def upsert_user_by_email(self, record: UserAccountRecord) -> dict:
        """
        Inserts the user row, or overwrites plan/status/updated_at when a row with the
        same email already exists. Returns the stored row as PostgREST echoes it back.
        """
        response = self._post(
            "users?on_conflict=email",
            record.model_dump(mode="json"),
            prefer="resolution=merge-duplicates,return=representation",
        )
        try:
            rows = response.json()
        except ValueError as e:
            raise StoreError(f"Unreadable upsert response: {e}") from e

        if isinstance(rows, list):
            if not rows:
                raise StoreError("Upsert returned no rows.")
            return rows[0]
        return rows

    def append_webhook_log(self, entry: WebhookLogEntry) -> None:
        """Appends one audit row. Duplicate deliveries produce duplicate rows."""
        self._post("webhook_logs", entry.model_dump(mode="json"), prefer="return=minimal")
