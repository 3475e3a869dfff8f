"""
kiwify_webhook.py  —  Kiwify Subscription Event Processor

Responsibility boundary:
  Kiwify:  delivers notifications at-least-once, in no guaranteed order, in one of
           two payload shapes (the admin simulator's flat Portuguese shape or the
           provider-native nested shape).
  Python (this file): authentication against the shared secret, field extraction,
           event classification, user upsert + audit log, acknowledgment body.

Payload shapes accepted:
  simple   {"email", "evento", "produto", "token"}
  native   {"webhook_event_type" | "order_status", "signature",
            "Customer": {"email"}, "Product": {"product_name"},
            "Subscription": {"plan": {"name"}}}

Delivery contract:
  Re-delivery of an already processed event re-upserts the same plan/status (no-op on
  the user row) and appends a second audit row. There is no ordering check: a stale
  "renewed" arriving after a newer "cancelled" reactivates the account.
"""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from supabase_store import (
    AccountStatus,
    Plan,
    StoreError,
    UserAccountRecord,
    WebhookLogEntry,
)

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Errors  —  each carries the HTTP status and JSON body returned to Kiwify
# ──────────────────────────────────────────────────────────────────────────────

class WebhookError(Exception):
    status_code = 500

    def __init__(self, payload: dict):
        super().__init__(payload.get("error", ""))
        self.payload = payload


class InvalidMethod(WebhookError):
    status_code = 405

    def __init__(self):
        super().__init__({"error": "Method not allowed"})


class MalformedBody(WebhookError):
    status_code = 500

    def __init__(self, details: str):
        super().__init__({"error": "Internal server error", "details": details})


class Unauthorized(WebhookError):
    status_code = 403

    def __init__(self):
        super().__init__({"error": "Forbidden - Invalid token"})


class MissingFields(WebhookError):
    status_code = 400

    def __init__(self, email: str, evento: str, produto: str):
        super().__init__({
            "error":    "Bad request - Missing email or evento",
            "received": {"email": email, "evento": evento, "produto": produto},
        })


class PersistenceFailure(WebhookError):
    status_code = 500

    def __init__(self, details: str):
        super().__init__({"error": "Failed to update user", "details": details})


class InternalError(WebhookError):
    status_code = 500

    def __init__(self, details: str):
        super().__init__({"error": "Internal server error", "details": details})


# ──────────────────────────────────────────────────────────────────────────────
# LAYER 1 — Field extraction  (ordered fallback paths per logical field)
# ──────────────────────────────────────────────────────────────────────────────

EMAIL_PATHS = [
    ("email",),
    ("Customer", "email"),
]

EVENT_PATHS = [
    ("evento",),
    ("webhook_event_type",),
    ("order_status",),
]

PRODUCT_PATHS = [
    ("produto",),
    ("Product", "product_name"),
    ("Subscription", "plan", "name"),
]


def pick_first(payload: dict, paths: list[tuple[str, ...]]) -> str:
    """
    Returns the first non-empty string found along `paths`, or "".

    A path is skipped when an intermediate value is not a dict or the leaf is not a
    non-empty string, so a malformed branch never hides a valid later one.
    """
    for path in paths:
        value = payload
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


@dataclass(frozen=True)
class NormalizedEvent:
    email:      str
    event_name: str
    product:    str
    raw_event:  str


def extract_event(payload: dict) -> NormalizedEvent:
    raw_event = pick_first(payload, EVENT_PATHS)
    return NormalizedEvent(
        email=pick_first(payload, EMAIL_PATHS).lower().strip(),
        event_name=raw_event.lower().strip(),
        product=pick_first(payload, PRODUCT_PATHS),
        raw_event=raw_event,
    )


def is_authorized(payload: dict, expected_token: str | None) -> bool:
    received = payload.get("token") or payload.get("signature")
    if not expected_token or not isinstance(received, str) or not received:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected_token.encode("utf-8"))


# ──────────────────────────────────────────────────────────────────────────────
# LAYER 2 — Classification  (ordered keyword table, first match wins)
#
# Keyword lists and their order encode Kiwify/business meaning: "cancel" must win
# over "paid" for e.g. "subscription_canceled_after_paid", and the Portuguese
# variants come from the admin simulator.
# ──────────────────────────────────────────────────────────────────────────────

class EventKind(str, Enum):
    cancelled = "cancelled"
    overdue   = "overdue"
    paid      = "paid"
    pending   = "pending"
    unknown   = "unknown"


CANCEL_KEYWORDS  = ["cancel", "cancelada", "cancelado", "chargeback", "refund", "reembolso"]
OVERDUE_KEYWORDS = ["overdue", "atrasada", "atrasado"]
PAID_KEYWORDS    = [
    "paid", "approved", "renew", "renovada", "aprovada",
    "aprovado", "renovado", "order_paid", "subscription_renewed",
]
PENDING_KEYWORDS = ["pix", "waiting", "pending"]

LABEL_CANCELLED = "Cancelado/Reembolsado - Acesso Bloqueado"
LABEL_OVERDUE   = "Atrasado - Acesso Bloqueado"
LABEL_PENDING   = "Aguardando Pagamento (Pix)"
LABEL_DEFAULT   = "free"


@dataclass(frozen=True)
class Classification:
    kind:   EventKind
    plan:   Plan
    status: AccountStatus
    label:  str


# (kind, keywords, status, plan, label); plan/label of None are resolved from the product
_RULES = [
    (EventKind.cancelled, CANCEL_KEYWORDS,  AccountStatus.cancelled, Plan.free, LABEL_CANCELLED),
    (EventKind.overdue,   OVERDUE_KEYWORDS, AccountStatus.overdue,   Plan.free, LABEL_OVERDUE),
    (EventKind.paid,      PAID_KEYWORDS,    AccountStatus.active,    None,      None),
    (EventKind.pending,   PENDING_KEYWORDS, AccountStatus.active,    Plan.free, LABEL_PENDING),
]


def _contains_any(text: str, keywords: list[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def plan_for_product(product: str) -> tuple[Plan, str]:
    """Maps a free-text product/plan name to (plan, human-readable label)."""
    product_lower = product.lower()
    if "master" in product_lower:
        return Plan.master, "Master"
    if "pro" in product_lower or "normal" in product_lower:
        return Plan.normal, "Normal"
    return Plan.normal, "Normal (padrão)"


def classify_event(event_name: str, product: str) -> Classification:
    event_lower = event_name.lower()
    for kind, keywords, status, plan, label in _RULES:
        if _contains_any(event_lower, keywords):
            if plan is None:
                plan, label = plan_for_product(product)
            return Classification(kind=kind, plan=plan, status=status, label=label)
    return Classification(
        kind=EventKind.unknown,
        plan=Plan.free,
        status=AccountStatus.active,
        label=LABEL_DEFAULT,
    )


def is_pending_payment(event_name: str) -> bool:
    """
    Pending payments (Pix generated, awaiting confirmation) never touch the user row.
    Checked independently of the classification table: "pix_refund" is classified as
    a cancellation but is still not persisted.
    """
    return _contains_any(event_name.lower(), PENDING_KEYWORDS)


def should_upsert(event: NormalizedEvent, classification: Classification, unknown_event_policy: str) -> bool:
    if is_pending_payment(event.event_name):
        return False
    if classification.kind is EventKind.unknown and unknown_event_policy == "log_only":
        return False
    return True


# ──────────────────────────────────────────────────────────────────────────────
# LAYER 3 — Reconciliation  (upsert, then best-effort audit log)
# ──────────────────────────────────────────────────────────────────────────────

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def process_notification(payload: dict, store, settings) -> dict:
    """
    Runs one authenticated, parsed notification through extraction, classification
    and persistence. Returns the 200 acknowledgment body.

    Raises a WebhookError subclass for every rejection:
      Unauthorized (403)        token/signature missing or wrong — nothing written
      MissingFields (400)       no email or no event after extraction — nothing written
      PersistenceFailure (500)  user upsert failed — the audit row is NOT written

    A failed audit-log insert is logged and swallowed; the plan change already
    happened and Kiwify must not re-deliver because of it.
    """
    if not is_authorized(payload, settings.webhook_token):
        log.error("Invalid or missing token — rejecting webhook.")
        raise Unauthorized()

    event = extract_event(payload)
    log.info(
        "Extracted data  email=%s  evento=%r  produto=%r",
        event.email, event.event_name, event.product,
    )

    if not event.email or not event.event_name:
        log.error(
            "Missing required fields after extraction  email=%r  evento=%r",
            event.email, event.event_name,
        )
        raise MissingFields(event.email, event.event_name, event.product)

    classification = classify_event(event.event_name, event.product)
    if classification.kind is EventKind.unknown:
        log.warning(
            "Unrecognised event %r for %s — defaulting to plan=%s status=%s (policy=%s)",
            event.raw_event, event.email,
            classification.plan.value, classification.status.value,
            settings.unknown_event_policy,
        )

    log.info(
        "Processing  email=%s  evento=%s  kind=%s  plan=%s  status=%s  plano_aplicado=%r",
        event.email, event.event_name, classification.kind.value,
        classification.plan.value, classification.status.value, classification.label,
    )

    if should_upsert(event, classification, settings.unknown_event_policy):
        record = UserAccountRecord(
            email=event.email,
            plan=classification.plan,
            status=classification.status,
            updated_at=_utc_now_iso(),
        )
        try:
            stored = store.upsert_user_by_email(record)
        except StoreError as e:
            log.error("Error upserting user %s: %s", event.email, e)
            raise PersistenceFailure(str(e))
        log.info("User updated: %s", stored)
    else:
        log.info("No account change for %s (%s) — logging only.", event.email, classification.kind.value)

    entry = WebhookLogEntry(
        email=event.email,
        evento=event.raw_event,
        produto=event.product,
        plano_aplicado=classification.label,
    )
    try:
        store.append_webhook_log(entry)
    except StoreError as e:
        log.error("Error logging webhook for %s: %s", event.email, e)

    return {
        "success": True,
        "message": "Webhook processed successfully",
        "data": {
            "email":          event.email,
            "plan":           classification.plan.value,
            "status":         classification.status.value,
            "plano_aplicado": classification.label,
        },
    }
