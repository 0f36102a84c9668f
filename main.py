"""
Inbound message router - FastAPI application

Receives Slack Events API and Twilio WhatsApp webhooks, acknowledges them
immediately and processes each message in the background:
  normalize -> resolve tenant -> store -> upload files / answer query -> reply

Run with: uvicorn main:app --reload --port 8000
"""

import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel
import uvicorn

from admin_tools import DataExporter, DataManager, DEFAULT_RETENTION_DAYS, log_admin_action, require_admin
from config import Settings, missing_required_vars
from database import utcnow
from errors import LinkingError, PayloadValidationError
from html_responses import link_account_page, link_expired_page
from monitoring import (
    configure_logging, logger, metrics_collector, log_security_event, get_metrics_response
)
from normalizers import handle_url_verification
from platform_clients import verify_slack_signature, verify_twilio_signature
from services import Services, build_services

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services once and release them on shutdown"""
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    missing = missing_required_vars()
    if missing:
        logger.warning("missing_environment_variables", missing=missing)

    services = build_services(settings)
    await services.db.initialize()
    app.state.services = services
    logger.info("application_started", base_url=settings.base_url)
    yield
    await services.close()
    logger.info("application_stopped")

app = FastAPI(
    title="Message Router",
    version="0.1.0",
    description="Slack and WhatsApp message routing with natural-language file queries",
    lifespan=lifespan
)

def get_services(request: Request) -> Services:
    return request.app.state.services

# === Slack ===

@app.post("/slack/events")
async def handle_slack_events(request: Request, background_tasks: BackgroundTasks,
                              services: Services = Depends(get_services)):
    """Slack Events API: URL verification, signature check, background processing"""
    body = await request.body()
    try:
        event_data = json.loads(body) if body else None
    except ValueError:
        # JSONDecodeError, or UnicodeDecodeError for bodies that are not valid text
        metrics_collector.record_webhook_rejection("slack", "invalid_json")
        raise HTTPException(400, "Invalid JSON")

    # URL verification happens before signature verification
    try:
        challenge = handle_url_verification(event_data)
    except PayloadValidationError as e:
        raise HTTPException(400, str(e))
    if challenge is not None:
        logger.info("slack_url_verification")
        return challenge

    signing_secret = services.settings.slack_signing_secret
    if not signing_secret:
        logger.error("slack_signing_secret_missing")
        raise HTTPException(500, "Slack signing secret is not configured")

    slack_signature = request.headers.get("x-slack-signature", "")
    slack_timestamp = request.headers.get("x-slack-request-timestamp", "")
    if not verify_slack_signature(signing_secret, body, slack_timestamp, slack_signature):
        metrics_collector.record_webhook_rejection("slack", "invalid_signature")
        log_security_event("slack", "invalid_signature", severity="medium",
                           timestamp=slack_timestamp)
        raise HTTPException(401, "Invalid signature")

    if not isinstance(event_data, dict):
        metrics_collector.record_webhook_rejection("slack", "invalid_payload")
        raise HTTPException(400, "Payload must be a JSON object")

    # Slack retries anything not acknowledged within 3 seconds
    background_tasks.add_task(services.webhooks.handle_slack_event, event_data)
    return {"status": "ok"}

class LinkCompletion(BaseModel):
    token: str
    user_id: str

@app.get("/slack/link", response_class=HTMLResponse)
async def slack_link_page(token: str = Query(...), services: Services = Depends(get_services)):
    """Page behind the link sent to unlinked Slack users"""
    record = await services.linking_tokens.verify(token)
    if record is None:
        return link_expired_page()

    minutes_left = max(1, int((record.expires_at - utcnow()).total_seconds() // 60))
    return link_account_page(token, services.settings.base_url, minutes_left)

@app.post("/slack/link", dependencies=[Depends(require_admin)])
async def complete_slack_link(body: LinkCompletion, services: Services = Depends(get_services)):
    """Called by the web app once the signed-in user confirms the link"""
    try:
        tenants = await services.identity.complete_linking(body.token, body.user_id)
    except LinkingError as e:
        raise HTTPException(400, str(e))

    log_admin_action("slack_link_completed", details={"user_id": body.user_id,
                                                       "tenant_count": len(tenants)})
    return {
        "status": "linked",
        "tenants": [{"id": t.tenant_id, "name": t.tenant_name, "slug": t.tenant_slug} for t in tenants],
    }

# === WhatsApp ===

@app.post("/whatsapp/webhook")
async def handle_whatsapp_webhook(request: Request, background_tasks: BackgroundTasks,
                                  services: Services = Depends(get_services)):
    """Twilio inbound WhatsApp message"""
    form = dict(await request.form())
    settings = services.settings

    if settings.twilio_auth_token:
        origin = settings.public_webhook_url or str(request.base_url).rstrip("/")
        url = f"{origin.rstrip('/')}{request.url.path}"
        signature = request.headers.get("x-twilio-signature", "")
        if not verify_twilio_signature(settings.twilio_auth_token, url, form, signature):
            metrics_collector.record_webhook_rejection("whatsapp", "invalid_signature")
            log_security_event("whatsapp", "invalid_signature", severity="medium", url=url)
            raise HTTPException(403, "Invalid signature")

    if not form.get("MessageSid"):
        # Status callbacks and malformed bodies are acknowledged but not processed
        logger.warning("whatsapp_webhook_ignored", keys=sorted(form.keys()))
    else:
        background_tasks.add_task(services.webhooks.handle_whatsapp, form)

    return Response(content=EMPTY_TWIML, media_type="application/xml")

class VerificationStart(BaseModel):
    phone_number: str
    tenant_id: str
    user_id: str

class VerificationConfirm(BaseModel):
    phone_number: str
    code: str

@app.post("/whatsapp/verifications", dependencies=[Depends(require_admin)])
async def start_whatsapp_verification(body: VerificationStart, services: Services = Depends(get_services)):
    try:
        verification_id = await services.phone_verification.start(
            body.phone_number, body.tenant_id, body.user_id
        )
    except LinkingError as e:
        raise HTTPException(400, str(e))
    return {"status": "sent", "verification_id": verification_id}

@app.post("/whatsapp/verifications/confirm", dependencies=[Depends(require_admin)])
async def confirm_whatsapp_verification(body: VerificationConfirm, services: Services = Depends(get_services)):
    try:
        access = await services.phone_verification.confirm(body.phone_number, body.code)
    except LinkingError as e:
        raise HTTPException(400, str(e))
    return {
        "status": "verified",
        "tenant_id": access.tenant.tenant_id,
        "user_id": access.user_id,
    }

# === Tenant data ===

@app.get("/tenants/{tenant_id}/messages", dependencies=[Depends(require_admin)])
async def list_messages(tenant_id: str, platform: Optional[str] = None,
                        limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
                        services: Services = Depends(get_services)):
    messages = await services.store.get_messages(tenant_id, platform, limit, offset)
    return {
        "tenant_id": tenant_id,
        "count": len(messages),
        "messages": [
            {
                "id": m.id,
                "message_id": m.message_id,
                "platform": m.platform,
                "sender": m.sender,
                "content": m.content,
                "is_query": m.is_query,
                "processing_time_ms": m.processing_time_ms,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in messages
        ],
    }

@app.get("/tenants/{tenant_id}/queries/recent", dependencies=[Depends(require_admin)])
async def recent_queries(tenant_id: str, limit: int = Query(10, ge=1, le=100),
                         services: Services = Depends(get_services)):
    queries = await services.store.get_recent_queries(tenant_id, limit)
    return {
        "tenant_id": tenant_id,
        "queries": [
            {
                "id": q.id,
                "platform": q.platform,
                "content": q.content,
                "intent": (q.parsed_query or {}).get("intent"),
                "response_text": ((q.response or {}).get("metadata") or {}).get("response_text"),
                "processing_time_ms": q.processing_time_ms,
                "created_at": q.created_at.isoformat() if q.created_at else None,
            }
            for q in queries
        ],
    }

@app.get("/tenants/{tenant_id}/stats", dependencies=[Depends(require_admin)])
async def tenant_stats(tenant_id: str, services: Services = Depends(get_services)):
    return await services.store.get_stats(tenant_id)

@app.get("/tenants/{tenant_id}/messages/export.csv", dependencies=[Depends(require_admin)])
async def export_messages(tenant_id: str, services: Services = Depends(get_services)):
    return await DataExporter(services.store).export_messages_csv(tenant_id)

@app.post("/admin/cleanup", dependencies=[Depends(require_admin)])
async def cleanup(retention_days: int = DEFAULT_RETENTION_DAYS, services: Services = Depends(get_services)):
    """Apply the message retention policy and drop expired linking tokens"""
    return await DataManager(services.store, services.linking_tokens).cleanup(retention_days)

# === Monitoring Endpoints ===

@app.get("/health")
async def health(services: Services = Depends(get_services)):
    """Health check endpoint"""
    settings = services.settings
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "database": services.db.dialect_name,
        "integrations": {
            "slack": bool(settings.slack_signing_secret),
            "whatsapp": services.twilio.configured,
            "cohere": bool(settings.cohere_api_key),
        },
    }

@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint"""
    return get_metrics_response()

# === Run the Application ===

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
