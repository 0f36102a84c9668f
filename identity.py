"""
Multi-tenant identity resolution for chat senders

Slack users may belong to several tenants and pick one per conversation
(cached for 30 minutes); WhatsApp numbers map to exactly one tenant once
verified. Every failure path ends in a message telling the sender what to do.
"""

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from database import DatabaseManager, SlackLinkingTokenDB, utcnow
from errors import LinkingError
from models import TenantContext, TenantAccess
from monitoring import logger, log_identity_event, log_security_event
from slack_commands import (
    CommandType, parse_command, find_tenant, HELP_TEXT, format_tenant_list,
    format_switch_confirmation, format_no_access, format_current_tenant,
    format_selection_required
)

CONTEXT_TTL = timedelta(minutes=30)
LINKING_TOKEN_TTL = timedelta(minutes=15)
VERIFICATION_CODE_TTL = timedelta(minutes=10)
MAX_VERIFICATION_ATTEMPTS = 5

Clock = Callable[[], datetime]

def normalize_phone(phone: str) -> str:
    """'whatsapp:+1 (415) 555-0123' -> '+14155550123'"""
    digits = re.sub(r"\D", "", phone or "")
    return f"+{digits}" if digits else ""

# === Tenant context cache ===

class TenantContextCache:
    """Active tenant per workspace+sender+conversation, expired lazily on read"""

    def __init__(self, ttl: timedelta = CONTEXT_TTL, clock: Clock = utcnow):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[TenantContext, datetime]] = {}

    @staticmethod
    def key(workspace_id: str, sender_id: str, conversation_id: str) -> str:
        return f"{workspace_id}:{sender_id}:{conversation_id}"

    def get(self, key: str) -> Optional[TenantContext]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        context, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return context

    def set(self, key: str, context: TenantContext):
        self._entries[key] = (context, self.clock() + self.ttl)

    def invalidate(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

# === Linking tokens ===

class LinkingTokenService:
    """Single-use tokens that let a Slack user link their account on the web"""

    def __init__(self, db: DatabaseManager, base_url: str, clock: Clock = utcnow):
        self.db = db
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    def link_url(self, token: str) -> str:
        return f"{self.base_url}/slack/link?token={token}"

    async def create(self, slack_user_id: str, workspace_id: str, email: Optional[str] = None) -> str:
        token = secrets.token_hex(32)
        await self.db.store_linking_token(
            token=token,
            slack_user_id=slack_user_id,
            workspace_id=workspace_id,
            expires_at=self.clock() + LINKING_TOKEN_TTL,
            email=email,
        )
        log_identity_event("slack", "linking_token_created", slack_user_id=slack_user_id,
                           workspace_id=workspace_id)
        return token

    async def verify(self, token: str) -> Optional[SlackLinkingTokenDB]:
        """Token record if it exists, is unused and has not expired"""
        record = await self.db.get_linking_token(token)
        if record is None or record.used_at is not None:
            return None
        if record.expires_at <= self.clock():
            return None
        return record

    async def consume(self, token: str) -> bool:
        return await self.db.mark_linking_token_used(token, self.clock())

    async def cleanup_expired(self) -> int:
        deleted = await self.db.delete_expired_linking_tokens(self.clock())
        if deleted:
            logger.info("linking_tokens_cleaned", deleted=deleted)
        return deleted

# === WhatsApp phone verification ===

class PhoneVerificationService:
    """Six-digit codes sent over WhatsApp to prove ownership of a number"""

    def __init__(self, db: DatabaseManager, twilio, clock: Clock = utcnow):
        self.db = db
        self.twilio = twilio
        self.clock = clock

    async def start(self, phone: str, tenant_id: str, user_id: str) -> str:
        """Create a code and send it; returns the verification id"""
        normalized = normalize_phone(phone)
        if not normalized:
            raise LinkingError("A phone number is required")

        code = f"{secrets.randbelow(10 ** 6):06d}"
        verification_id = await self.db.store_verification(
            phone_number=normalized,
            code=code,
            tenant_id=tenant_id,
            user_id=user_id,
            expires_at=self.clock() + VERIFICATION_CODE_TTL,
        )

        minutes = int(VERIFICATION_CODE_TTL.total_seconds() // 60)
        result = await self.twilio.send_message(
            normalized,
            f"Your verification code is {code}. It expires in {minutes} minutes.",
        )
        if not result.ok:
            raise LinkingError(f"Could not send verification code: {result.error}")

        log_identity_event("whatsapp", "verification_started", phone_number=normalized, tenant_id=tenant_id)
        return verification_id

    async def confirm(self, phone: str, code: str) -> TenantAccess:
        """Check the code and map the number to the tenant that requested it"""
        normalized = normalize_phone(phone)
        verification = await self.db.get_latest_verification(normalized)
        if verification is None:
            raise LinkingError("No pending verification for this number")
        if verification.expires_at <= self.clock():
            raise LinkingError("Verification code has expired")
        if (verification.attempts or 0) >= MAX_VERIFICATION_ATTEMPTS:
            raise LinkingError("Too many attempts; request a new code")

        if not secrets.compare_digest(verification.code, code.strip()):
            await self.db.record_verification_attempt(verification.id)
            log_security_event("whatsapp", "verification_code_mismatch", phone_number=normalized)
            raise LinkingError("Verification code is incorrect")

        await self.db.record_verification_attempt(verification.id, verified_at=self.clock())
        await self.db.upsert_whatsapp_mapping(normalized, verification.tenant_id, verification.user_id)
        log_identity_event("whatsapp", "phone_verified", phone_number=normalized,
                           tenant_id=verification.tenant_id)

        access = await self.db.get_whatsapp_mapping(normalized)
        return access

# === Resolver ===

@dataclass
class IdentityResolution:
    """Either a tenant/user to route under, or a reply that ends the exchange"""
    tenant: Optional[TenantContext] = None
    user_id: Optional[str] = None
    query_text: Optional[str] = None
    reply_text: Optional[str] = None
    notice: Optional[str] = None   # Shown above the routed reply

    @property
    def resolved(self) -> bool:
        return self.tenant is not None and self.reply_text is None

def format_setup_message(link_url: str) -> str:
    minutes = int(LINKING_TOKEN_TTL.total_seconds() // 60)
    return (
        "👋 Welcome! To get started, link your Slack account to your organization.\n\n"
        f"<{link_url}|Click here to link your account>\n\n"
        f"(Link expires in {minutes} minutes)"
    )

def format_welcome_message(tenants: List[TenantContext]) -> str:
    names = ", ".join(f"*{t.tenant_name}*" for t in tenants)
    text = f"✅ Your Slack account is now linked to {names}.\n\n"
    text += "You can ask questions about your files, for example _How many invoices do I have?_"
    if len(tenants) > 1:
        text += "\n\nUse `list tenants` to see your organizations and `@slug` to choose one."
    return text

def format_whatsapp_registration_message(base_url: str) -> str:
    return (
        "👋 This WhatsApp number isn't linked to an account yet.\n\n"
        f"Verify your number in the app settings to get started: {base_url}/settings/integrations"
    )

class IdentityResolver:
    """Maps platform senders to a tenant and an internal user"""

    def __init__(self, db: DatabaseManager, slack_client, cache: TenantContextCache,
                 linking_tokens: LinkingTokenService, base_url: str):
        self.db = db
        self.slack = slack_client
        self.cache = cache
        self.linking_tokens = linking_tokens
        self.base_url = base_url.rstrip("/")

    # === Slack ===

    async def resolve_slack(self, workspace_id: str, slack_user_id: str, conversation_id: str,
                            text: Optional[str], bot_token: Optional[str]) -> IdentityResolution:
        accesses = await self.db.get_slack_user_tenants(slack_user_id, workspace_id)
        if accesses:
            return await self._resolve_linked(workspace_id, slack_user_id, conversation_id, text, accesses)

        email = await self._profile_email(slack_user_id, bot_token)
        accesses = await self._auto_link(workspace_id, slack_user_id, email)
        if not accesses:
            token = await self.linking_tokens.create(slack_user_id, workspace_id, email)
            return IdentityResolution(reply_text=format_setup_message(self.linking_tokens.link_url(token)))

        # Freshly linked: the triggering message still goes through normal resolution
        welcome = format_welcome_message([access.tenant for access in accesses])
        resolution = await self._resolve_linked(workspace_id, slack_user_id, conversation_id, text, accesses)
        if resolution.reply_text is not None:
            resolution.reply_text = f"{welcome}\n\n{resolution.reply_text}"
        else:
            resolution.notice = welcome
        return resolution

    async def _resolve_linked(self, workspace_id: str, slack_user_id: str, conversation_id: str,
                              text: Optional[str], accesses: List[TenantAccess]) -> IdentityResolution:
        tenants = [access.tenant for access in accesses]
        user_ids = {access.tenant.tenant_id: access.user_id for access in accesses}
        key = self.cache.key(workspace_id, slack_user_id, conversation_id)
        command = parse_command(text)

        if command.type is CommandType.SWITCH:
            target = find_tenant(command.tenant_identifier, tenants)
            if target is None:
                log_security_event("slack", "tenant_switch_denied", severity="low",
                                   slack_user_id=slack_user_id, identifier=command.tenant_identifier)
                return IdentityResolution(reply_text=format_no_access(command.tenant_identifier))

            self.cache.set(key, target)
            log_identity_event("slack", "tenant_switched", slack_user_id=slack_user_id,
                               tenant_id=target.tenant_id)
            if command.query:
                return IdentityResolution(tenant=target, user_id=user_ids[target.tenant_id],
                                          query_text=command.query)
            return IdentityResolution(tenant=target, user_id=user_ids[target.tenant_id],
                                      reply_text=format_switch_confirmation(target))

        active = self._active_tenant(key, tenants)

        if command.type is CommandType.LIST:
            return IdentityResolution(reply_text=format_tenant_list(tenants, active))
        if command.type is CommandType.CURRENT:
            return IdentityResolution(reply_text=format_current_tenant(active))
        if command.type is CommandType.HELP:
            return IdentityResolution(reply_text=HELP_TEXT)

        if active is None:
            return IdentityResolution(reply_text=format_selection_required(tenants))
        return IdentityResolution(tenant=active, user_id=user_ids[active.tenant_id],
                                  query_text=command.query)

    def _active_tenant(self, key: str, tenants: List[TenantContext]) -> Optional[TenantContext]:
        """Cached selection if still accessible; the only tenant when there is just one"""
        cached = self.cache.get(key)
        if cached is not None:
            for tenant in tenants:
                if tenant.tenant_id == cached.tenant_id:
                    return tenant
            # Access was revoked since the selection was made
            self.cache.invalidate(key)

        if len(tenants) == 1:
            self.cache.set(key, tenants[0])
            return tenants[0]
        return None

    async def _profile_email(self, slack_user_id: str, bot_token: Optional[str]) -> Optional[str]:
        if not bot_token:
            return None
        profile = await self.slack.get_user_profile(bot_token, slack_user_id)
        return profile.email if profile else None

    async def _auto_link(self, workspace_id: str, slack_user_id: str,
                         email: Optional[str]) -> List[TenantAccess]:
        """Map the Slack user to every tenant of the account with the same email"""
        if not email:
            return []
        user_id = await self.db.find_user_id_by_email(email)
        if not user_id:
            return []
        tenants = await self.db.get_user_tenants(user_id)
        if not tenants:
            return []

        await self.db.create_slack_user_mappings(
            slack_user_id, workspace_id, user_id, [t.tenant_id for t in tenants]
        )
        log_identity_event("slack", "auto_linked", slack_user_id=slack_user_id,
                           workspace_id=workspace_id, tenant_count=len(tenants))
        return await self.db.get_slack_user_tenants(slack_user_id, workspace_id)

    async def complete_linking(self, token: str, user_id: str) -> List[TenantContext]:
        """Map the token's Slack user to every tenant of the signed-in account"""
        record = await self.linking_tokens.verify(token)
        if record is None:
            raise LinkingError("Linking token is invalid or has expired")

        tenants = await self.db.get_user_tenants(user_id)
        if not tenants:
            raise LinkingError("This account does not belong to any organization")

        if not await self.linking_tokens.consume(token):
            raise LinkingError("Linking token has already been used")

        await self.db.create_slack_user_mappings(
            record.slack_user_id, record.workspace_id, user_id, [t.tenant_id for t in tenants]
        )
        log_identity_event("slack", "manually_linked", slack_user_id=record.slack_user_id,
                           workspace_id=record.workspace_id, tenant_count=len(tenants))
        return tenants

    # === WhatsApp ===

    async def resolve_whatsapp(self, phone: str) -> IdentityResolution:
        access = await self.db.get_whatsapp_mapping(normalize_phone(phone))
        if access is None:
            log_identity_event("whatsapp", "unmapped_sender", phone_number=normalize_phone(phone))
            return IdentityResolution(reply_text=format_whatsapp_registration_message(self.base_url))
        return IdentityResolution(tenant=access.tenant, user_id=access.user_id)
