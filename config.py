"""
config.py  —  Process-wide settings for the Kiwify webhook service

Loaded once at import time from the environment (and a local .env file, if any).
The Settings object is frozen: the shared webhook secret and the Supabase
credentials never change for the lifetime of the process.

Environment
───────────
  KIWIFY_WEBHOOK_TOKEN       shared secret Kiwify sends as `token` / `signature`
  SUPABASE_URL               https://<project>.supabase.co
  SUPABASE_KEY               service-role key (SUPABASE_SERVICE_ROLE_KEY also accepted)
  SUPABASE_TIMEOUT_SECONDS   per-request timeout for store calls (0 = no timeout)
  UNKNOWN_EVENT_POLICY       'apply' (default) or 'log_only'
  LOG_LEVEL                  INFO by default
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


UNKNOWN_EVENT_POLICIES = {"apply", "log_only"}

LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

DEFAULT_TIMEOUT_SECONDS = 10.0


def _parse_timeout(raw: str | None) -> float | None:
    """Empty or zero disables the timeout; anything unparsable falls back to the default."""
    if raw is None:
        return DEFAULT_TIMEOUT_SECONDS
    raw = raw.strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS
    return value if value > 0 else None


def _parse_policy(raw: str | None) -> str:
    policy = (raw or "apply").strip().lower()
    if policy not in UNKNOWN_EVENT_POLICIES:
        raise ValueError(
            f"UNKNOWN_EVENT_POLICY must be one of {sorted(UNKNOWN_EVENT_POLICIES)}, got {raw!r}"
        )
    return policy


def _parse_log_level(raw: str | None) -> str:
    level = (raw or "INFO").strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, got {raw!r}")
    return level


@dataclass(frozen=True)
class Settings:
    webhook_token:        str | None = None
    supabase_url:         str | None = None
    supabase_key:         str | None = None
    supabase_timeout:     float | None = DEFAULT_TIMEOUT_SECONDS
    unknown_event_policy: str = "apply"
    log_level:            str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_token=os.environ.get("KIWIFY_WEBHOOK_TOKEN") or None,
            supabase_url=(os.environ.get("SUPABASE_URL") or "").rstrip("/") or None,
            supabase_key=(
                os.environ.get("SUPABASE_KEY")
                or os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
                or None
            ),
            supabase_timeout=_parse_timeout(os.environ.get("SUPABASE_TIMEOUT_SECONDS")),
            unknown_event_policy=_parse_policy(os.environ.get("UNKNOWN_EVENT_POLICY")),
            log_level=_parse_log_level(os.environ.get("LOG_LEVEL")),
        )


settings = Settings.from_env()
