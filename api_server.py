"""
api_server.py  —  Kiwify Webhook REST API Server

Exposes kiwify_webhook.py over HTTP so Kiwify can activate, renew, block and cancel
the recipe app's paid plans.

Architecture
────────────
  • FastAPI handles routing; the webhook route reads the raw body itself because
    Kiwify payload shapes vary too much for strict request-model validation.
  • CORS headers are attached explicitly on every webhook response (the admin
    simulator calls the endpoint straight from the browser).
  • Supabase calls are blocking (requests) and run via asyncio.to_thread().
  • Every error is caught at the top of the handler and turned into a JSON body
    with an HTTP status; Kiwify retries on any non-2xx.

Run (development — auto-reload on file changes)
───────────────────────────────────────────────
  uvicorn api_server:app --reload --port 8000

Endpoints
─────────
  GET      /health          — liveness check
  POST     /kiwify-webhook  — process one Kiwify notification
  OPTIONS  /kiwify-webhook  — CORS preflight (empty 200)
"""

import asyncio
import json
import logging
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, settings as _settings
from kiwify_webhook import (
    InternalError,
    InvalidMethod,
    MalformedBody,
    WebhookError,
    process_notification,
)
from supabase_store import SupabaseStore

logging.basicConfig(
    level=_settings.log_level,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

if not _settings.webhook_token:
    log.warning("KIWIFY_WEBHOOK_TOKEN is not set — every webhook will be rejected with 403.")


# ──────────────────────────────────────────────────────────────────────────────
# App + CORS
# ──────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Kiwify Webhook API",
    description="Plan activation / cancellation webhook for the recipe app.",
    version="1.0.0",
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin":  "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

WEBHOOK_PATH = "/kiwify-webhook"

WEBHOOK_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies  (overridden in tests)
# ──────────────────────────────────────────────────────────────────────────────

def get_settings() -> Settings:
    return _settings


def get_store(settings: Settings = Depends(get_settings)) -> SupabaseStore:
    return SupabaseStore(
        settings.supabase_url,
        settings.supabase_key,
        timeout=settings.supabase_timeout,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Internal helpers
# ──────────────────────────────────────────────────────────────────────────────

def _json_response(body: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=body, status_code=status_code, headers=CORS_HEADERS)


def _parse_body(raw: bytes) -> dict:
    """Decodes the request body; anything that is not a JSON object is a MalformedBody."""
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedBody(str(e))
    if not isinstance(payload, dict):
        raise MalformedBody(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


# ──────────────────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def _webhook_http_exception(request: Request, exc: StarletteHTTPException) -> Response:
    """Verbs outside WEBHOOK_METHODS are rejected by the router before reaching the route."""
    if exc.status_code == 405 and request.url.path == WEBHOOK_PATH:
        error = InvalidMethod()
        return _json_response(error.payload, status_code=error.status_code)
    return await http_exception_handler(request, exc)


@app.get("/health", tags=["Meta"])
def health() -> dict:
    """Liveness check — returns server status and current timestamp."""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.api_route(WEBHOOK_PATH, methods=WEBHOOK_METHODS, tags=["Webhook"])
async def kiwify_webhook(
    request: Request,
    store: SupabaseStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Receives one Kiwify notification and reconciles the customer's plan.

    Flow:
      1. OPTIONS → empty 200 with CORS headers; any other non-POST → 405.
      2. Parse the JSON body (failure → 500).
      3. Authenticate, extract, classify, upsert user, append audit row.
      4. Return {success, message, data: {email, plan, status, plano_aplicado}}.
    """
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)

    try:
        if request.method != "POST":
            raise InvalidMethod()

        log.info("=== KIWIFY WEBHOOK RECEIVED ===")
        payload = _parse_body(await request.body())

        ack = await asyncio.to_thread(process_notification, payload, store, settings)

        log.info("=== WEBHOOK PROCESSED SUCCESSFULLY ===  %s", ack["data"])
        return _json_response(ack)

    except WebhookError as e:
        log.warning("Webhook rejected (%d): %s", e.status_code, e.payload.get("error"))
        return _json_response(e.payload, status_code=e.status_code)
    except Exception as e:
        log.exception("=== WEBHOOK ERROR ===")
        error = InternalError(str(e) or type(e).__name__)
        return _json_response(error.payload, status_code=error.status_code)
