"""
Admin Tools for the message router
Admin authentication, message export and data retention
"""

import csv
import hmac
import io
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, Header, Request
from fastapi.responses import StreamingResponse

from identity import LinkingTokenService
from message_store import MessageStore
from monitoring import logger, log_security_event

EXPORT_LIMIT = 10000
DEFAULT_RETENTION_DAYS = 90

# === Admin Authentication ===

def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the static admin token from ADMIN_API_TOKEN must match"""
    expected = request.app.state.services.settings.admin_api_token
    if not expected:
        raise HTTPException(503, "Admin API is not configured")
    if not x_admin_token:
        raise HTTPException(401, "Admin token required")
    if not hmac.compare_digest(x_admin_token, expected):
        log_security_event(
            platform="admin",
            event_type="invalid_admin_token",
            severity="medium",
            path=request.url.path,
        )
        raise HTTPException(401, "Invalid admin token")
    return x_admin_token

def log_admin_action(action: str, tenant_id: Optional[str] = None, details: Dict[str, Any] = None):
    """Log admin action for audit trail"""
    log_security_event(
        platform="admin",
        event_type=f"admin_action_{action}",
        severity="info",
        tenant_id=tenant_id,
        **details or {}
    )

# === Data Export ===

class DataExporter:
    """Tenant message export"""

    def __init__(self, store: MessageStore):
        self.store = store

    async def export_messages_csv(self, tenant_id: str) -> StreamingResponse:
        """Export a tenant's stored messages as a CSV file"""
        messages = await self.store.get_messages(tenant_id, limit=EXPORT_LIMIT)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "ID", "Message ID", "Platform", "Sender", "Content",
            "Is Query", "Processing Time (ms)", "Created At"
        ])
        for message in messages:
            writer.writerow([
                message.id,
                message.message_id,
                message.platform,
                message.sender,
                message.content,
                "yes" if message.is_query else "no",
                message.processing_time_ms if message.processing_time_ms is not None else "",
                message.created_at.isoformat() if message.created_at else "",
            ])

        log_admin_action("message_export", tenant_id, {"message_count": len(messages)})

        output.seek(0)
        return StreamingResponse(
            io.BytesIO(output.getvalue().encode('utf-8')),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename=messages_{tenant_id}_{datetime.now().strftime('%Y%m%d')}.csv"}
        )

# === Data Retention ===

class DataManager:
    """Retention cleanup for messages and linking tokens"""

    def __init__(self, store: MessageStore, linking_tokens: LinkingTokenService):
        self.store = store
        self.linking_tokens = linking_tokens

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        if retention_days < 1:
            raise HTTPException(400, "Retention days must be at least 1")

        deleted_messages = await self.store.delete_old_messages(retention_days)
        deleted_tokens = await self.linking_tokens.cleanup_expired()

        log_admin_action("cleanup", details={
            "retention_days": retention_days,
            "deleted_messages": deleted_messages,
            "deleted_linking_tokens": deleted_tokens,
        })
        logger.info("cleanup_completed", deleted_messages=deleted_messages,
                    deleted_linking_tokens=deleted_tokens)

        return {
            "status": "success",
            "retention_days": retention_days,
            "deleted_messages": deleted_messages,
            "deleted_linking_tokens": deleted_tokens,
        }
