"""
Webhook processing: normalized envelope -> identity -> router -> platform reply

Runs after the HTTP handler has acknowledged the webhook, so nothing here can
change the response the platform sees. Failures are logged; a failed reply
is not retried.
"""

from dataclasses import replace
from typing import Any, Dict, Mapping, Optional

from database import DatabaseManager
from identity import IdentityResolver
from models import MessageEnvelope, ProcessingResult
from monitoring import logger
from normalizers import parse_slack_event, parse_twilio_whatsapp
from platform_clients import SlackClient, TwilioClient
from router import MessageRouter, RouteContext
from slack_commands import format_context_badge

class WebhookProcessor:
    """Drives one inbound webhook through the full pipeline"""

    def __init__(self, db: DatabaseManager, identity: IdentityResolver, router: MessageRouter,
                 slack: SlackClient, twilio: TwilioClient):
        self.db = db
        self.identity = identity
        self.router = router
        self.slack = slack
        self.twilio = twilio

    # === Slack ===

    async def handle_slack_event(self, payload: Dict[str, Any]) -> Optional[ProcessingResult]:
        parsed = parse_slack_event(payload)
        if parsed is None:
            return None
        if parsed.skipped:
            logger.debug("slack_event_skipped", reason=parsed.reason, event_id=payload.get("event_id"))
            return None

        envelope = parsed.envelope
        workspace_id = envelope.metadata["workspace_id"]
        channel = envelope.metadata["channel_id"]
        thread_ts = envelope.metadata.get("thread_ts")

        workspace = await self.db.get_slack_workspace(workspace_id)
        if workspace is None or not workspace.is_active or not workspace.bot_token:
            logger.error("slack_workspace_not_configured", workspace_id=workspace_id,
                         message_id=envelope.message_id)
            return None
        if workspace.bot_user_id and envelope.sender == workspace.bot_user_id:
            return None

        resolution = await self.identity.resolve_slack(
            workspace_id, envelope.sender, channel, envelope.content, workspace.bot_token
        )
        if not resolution.resolved:
            await self.slack.send_message(workspace.bot_token, channel, resolution.reply_text,
                                          thread_ts=thread_ts)
            return None

        # Tenant commands such as "@acme show invoices" leave only the query part
        envelope = replace(envelope, content=resolution.query_text or None)
        result = await self.router.route(envelope, RouteContext(
            tenant_id=resolution.tenant.tenant_id,
            user_id=resolution.user_id,
            bot_token=workspace.bot_token,
        ))
        if result.duplicate:
            return result

        text = result.response_text
        if envelope.metadata.get("is_dm"):
            text = f"{format_context_badge(resolution.tenant)} {text}"
        if resolution.notice:
            text = f"{resolution.notice}\n\n{text}"

        sent = await self.slack.send_message(workspace.bot_token, channel, text,
                                             thread_ts=thread_ts, blocks=result.blocks or None)
        if not sent.ok:
            logger.error("slack_reply_failed", message_id=envelope.message_id, error=sent.error)
        return result

    # === WhatsApp ===

    async def handle_whatsapp(self, form: Mapping[str, Any]) -> Optional[ProcessingResult]:
        envelope = parse_twilio_whatsapp(form)
        if envelope is None:
            logger.warning("whatsapp_payload_invalid", message_sid=form.get("MessageSid"))
            return None

        resolution = await self.identity.resolve_whatsapp(envelope.sender)
        if not resolution.resolved:
            await self._reply_whatsapp(envelope, resolution.reply_text)
            return None

        result = await self.router.route(envelope, RouteContext(
            tenant_id=resolution.tenant.tenant_id,
            user_id=resolution.user_id,
        ))
        if not result.duplicate:
            await self._reply_whatsapp(envelope, result.response_text)
        return result

    async def _reply_whatsapp(self, envelope: MessageEnvelope, text: str):
        sent = await self.twilio.send_message(envelope.sender, text)
        if not sent.ok:
            logger.error("whatsapp_reply_failed", message_id=envelope.message_id, error=sent.error)
