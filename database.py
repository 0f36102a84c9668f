"""
Database layer: PostgreSQL (async SQLAlchemy) for messages, identity mappings and files

Tables:
- tenants / users / tenant_members: accounts the chat identities link to
- slack_workspaces / slack_user_mappings / slack_linking_tokens: Slack identity
- whatsapp_mappings / whatsapp_verifications: WhatsApp identity
- communication_messages / query_analytics: inbound messages and query telemetry
- files: tenant documents uploaded through chat (queried by the executor)
"""

import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Column, String, Text, DateTime, Boolean, Integer, Float, JSON,
    ForeignKey, UniqueConstraint, select, delete, update
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from models import TenantContext, TenantAccess, SlackWorkspace
from monitoring import logger

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return str(uuid.uuid4())

def tenant_slug(name: str, slug: Optional[str]) -> str:
    """Stored slug, or the lowercased name with whitespace removed"""
    if slug:
        return slug
    return re.sub(r"\s+", "", name).lower()

# SQLAlchemy setup
Base = declarative_base()

# === Accounts ===

class TenantDB(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True)
    created_at = Column(DateTime, default=utcnow)

class UserDB(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), unique=True, nullable=False)
    name = Column(String(200))
    created_at = Column(DateTime, default=utcnow)

class TenantMemberDB(Base):
    __tablename__ = "tenant_members"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_tenant_member"),)

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    role = Column(String(50), default="member")
    created_at = Column(DateTime, default=utcnow)

# === Slack identity ===

class SlackWorkspaceDB(Base):
    """Installed workspace and its bot credentials"""
    __tablename__ = "slack_workspaces"

    workspace_id = Column(String(20), primary_key=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    bot_token = Column(Text, nullable=False)  # Should be encrypted in production
    bot_user_id = Column(String(20))
    team_name = Column(String(200))
    is_active = Column(Boolean, default=True)
    installed_at = Column(DateTime, default=utcnow)

class SlackUserMappingDB(Base):
    """One row per (Slack user, workspace, tenant) the user may act in"""
    __tablename__ = "slack_user_mappings"
    __table_args__ = (
        UniqueConstraint("slack_user_id", "workspace_id", "tenant_id", name="uq_slack_user_tenant"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    slack_user_id = Column(String(20), nullable=False, index=True)
    workspace_id = Column(String(20), nullable=False)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

class SlackLinkingTokenDB(Base):
    __tablename__ = "slack_linking_tokens"

    token = Column(String(64), primary_key=True)
    slack_user_id = Column(String(20), nullable=False)
    workspace_id = Column(String(20), nullable=False)
    email = Column(String(320))
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

# === WhatsApp identity ===

class WhatsAppMappingDB(Base):
    __tablename__ = "whatsapp_mappings"

    phone_number = Column(String(20), primary_key=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

class WhatsAppVerificationDB(Base):
    __tablename__ = "whatsapp_verifications"

    id = Column(String(36), primary_key=True, default=new_id)
    phone_number = Column(String(20), nullable=False, index=True)
    code = Column(String(6), nullable=False)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    attempts = Column(Integer, default=0)
    expires_at = Column(DateTime, nullable=False)
    verified_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

# === Messages ===

class CommunicationMessageDB(Base):
    """Inbound message; message_id is the platform dedup key"""
    __tablename__ = "communication_messages"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(255), unique=True, nullable=False)
    platform = Column(String(20), nullable=False)
    sender = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    tenant_id = Column(String(36), index=True)
    user_id = Column(String(36))
    is_query = Column(Boolean, default=False)
    parsed_query = Column(JSON)
    query_confidence = Column(Float)
    response = Column(JSON)
    processing_time_ms = Column(Integer)
    message_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

class QueryAnalyticsDB(Base):
    __tablename__ = "query_analytics"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("communication_messages.id"))
    tenant_id = Column(String(36), index=True)
    platform = Column(String(20))
    intent = Column(String(20), nullable=False)
    entities = Column(JSON)
    execution_time_ms = Column(Integer)
    result_count = Column(Integer)
    error = Column(Text)
    created_at = Column(DateTime, default=utcnow)

# === Files ===

class FileDB(Base):
    """Tenant document registered by the blob store"""
    __tablename__ = "files"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    mime_type = Column(String(200))
    size = Column(Integer)
    source = Column(String(20))
    storage_path = Column(Text)
    uploaded_by = Column(String(36))
    processing_status = Column(String(20), default="pending")
    document_type = Column(String(50))
    vendor = Column(String(200))
    total_amount = Column(Float)
    file_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, default=utcnow)

class DatabaseManager:
    """Owns the async engine and the identity data access"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = None
        self.session_factory = None
        self._initialized = False

    async def initialize(self, create_tables: bool = True):
        """Create the engine and, optionally, the tables"""
        if self._initialized:
            return

        self.engine = create_async_engine(self.database_url, echo=False)
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        self._initialized = True
        logger.info("database_initialized", dialect=self.dialect_name)

    async def close(self):
        if self.engine is not None:
            await self.engine.dispose()
        self._initialized = False

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name if self.engine is not None else "unknown"

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError("DatabaseManager.initialize() has not been called")
        return self.session_factory()

    # === Accounts ===

    async def create_tenant(self, name: str, slug: Optional[str] = None) -> TenantContext:
        async with self.session() as session:
            tenant = TenantDB(name=name, slug=slug)
            session.add(tenant)
            await session.commit()
            return TenantContext(tenant.id, tenant.name, tenant_slug(tenant.name, tenant.slug))

    async def create_user(self, email: str, name: Optional[str] = None) -> str:
        async with self.session() as session:
            user = UserDB(email=email.lower(), name=name)
            session.add(user)
            await session.commit()
            return user.id

    async def add_tenant_member(self, tenant_id: str, user_id: str, role: str = "member"):
        async with self.session() as session:
            session.add(TenantMemberDB(tenant_id=tenant_id, user_id=user_id, role=role))
            await session.commit()

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        async with self.session() as session:
            result = await session.execute(
                select(UserDB.id).where(UserDB.email == email.lower())
            )
            return result.scalar_one_or_none()

    async def get_user_tenants(self, user_id: str) -> List[TenantContext]:
        """Every tenant the account is a member of"""
        async with self.session() as session:
            result = await session.execute(
                select(TenantDB)
                .join(TenantMemberDB, TenantMemberDB.tenant_id == TenantDB.id)
                .where(TenantMemberDB.user_id == user_id)
                .order_by(TenantDB.name)
            )
            return [
                TenantContext(t.id, t.name, tenant_slug(t.name, t.slug))
                for t in result.scalars().all()
            ]

    # === Slack ===

    async def store_slack_workspace(self, workspace: SlackWorkspace):
        async with self.session() as session:
            await session.merge(SlackWorkspaceDB(
                workspace_id=workspace.workspace_id,
                tenant_id=workspace.tenant_id,
                bot_token=workspace.bot_token,
                bot_user_id=workspace.bot_user_id,
                team_name=workspace.team_name,
                is_active=workspace.is_active,
            ))
            await session.commit()

    async def get_slack_workspace(self, workspace_id: str) -> Optional[SlackWorkspace]:
        async with self.session() as session:
            row = await session.get(SlackWorkspaceDB, workspace_id)
            if row is None:
                return None
            return SlackWorkspace(
                workspace_id=row.workspace_id,
                tenant_id=row.tenant_id,
                bot_token=row.bot_token,
                bot_user_id=row.bot_user_id,
                team_name=row.team_name,
                is_active=bool(row.is_active),
            )

    async def get_slack_user_tenants(self, slack_user_id: str, workspace_id: str) -> List[TenantAccess]:
        async with self.session() as session:
            result = await session.execute(
                select(SlackUserMappingDB, TenantDB)
                .join(TenantDB, TenantDB.id == SlackUserMappingDB.tenant_id)
                .where(
                    SlackUserMappingDB.slack_user_id == slack_user_id,
                    SlackUserMappingDB.workspace_id == workspace_id,
                )
                .order_by(TenantDB.name)
            )
            return [
                TenantAccess(
                    tenant=TenantContext(tenant.id, tenant.name, tenant_slug(tenant.name, tenant.slug)),
                    user_id=mapping.user_id,
                )
                for mapping, tenant in result.all()
            ]

    async def create_slack_user_mappings(self, slack_user_id: str, workspace_id: str,
                                         user_id: str, tenant_ids: List[str]) -> int:
        """Map a Slack user to tenants, skipping mappings that already exist"""
        async with self.session() as session:
            result = await session.execute(
                select(SlackUserMappingDB.tenant_id).where(
                    SlackUserMappingDB.slack_user_id == slack_user_id,
                    SlackUserMappingDB.workspace_id == workspace_id,
                )
            )
            existing = set(result.scalars().all())
            created = 0
            for tenant_id in tenant_ids:
                if tenant_id in existing:
                    continue
                session.add(SlackUserMappingDB(
                    slack_user_id=slack_user_id,
                    workspace_id=workspace_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                ))
                created += 1
            await session.commit()
            return created

    async def store_linking_token(self, token: str, slack_user_id: str, workspace_id: str,
                                  expires_at: datetime, email: Optional[str] = None):
        async with self.session() as session:
            session.add(SlackLinkingTokenDB(
                token=token,
                slack_user_id=slack_user_id,
                workspace_id=workspace_id,
                email=email,
                expires_at=expires_at,
            ))
            await session.commit()

    async def get_linking_token(self, token: str) -> Optional[SlackLinkingTokenDB]:
        async with self.session() as session:
            return await session.get(SlackLinkingTokenDB, token)

    async def mark_linking_token_used(self, token: str, used_at: datetime) -> bool:
        """Set used_at only if still unused; False when someone else got there first"""
        async with self.session() as session:
            result = await session.execute(
                update(SlackLinkingTokenDB)
                .where(SlackLinkingTokenDB.token == token, SlackLinkingTokenDB.used_at.is_(None))
                .values(used_at=used_at)
            )
            await session.commit()
            return result.rowcount == 1

    async def delete_expired_linking_tokens(self, now: datetime) -> int:
        async with self.session() as session:
            result = await session.execute(
                delete(SlackLinkingTokenDB).where(SlackLinkingTokenDB.expires_at < now)
            )
            await session.commit()
            return result.rowcount or 0

    # === WhatsApp ===

    async def get_whatsapp_mapping(self, phone_number: str) -> Optional[TenantAccess]:
        async with self.session() as session:
            result = await session.execute(
                select(WhatsAppMappingDB, TenantDB)
                .join(TenantDB, TenantDB.id == WhatsAppMappingDB.tenant_id)
                .where(WhatsAppMappingDB.phone_number == phone_number)
            )
            row = result.first()
            if row is None:
                return None
            mapping, tenant = row
            return TenantAccess(
                tenant=TenantContext(tenant.id, tenant.name, tenant_slug(tenant.name, tenant.slug)),
                user_id=mapping.user_id,
            )

    async def upsert_whatsapp_mapping(self, phone_number: str, tenant_id: str, user_id: str):
        async with self.session() as session:
            await session.merge(WhatsAppMappingDB(
                phone_number=phone_number,
                tenant_id=tenant_id,
                user_id=user_id,
                created_at=utcnow(),
            ))
            await session.commit()

    async def store_verification(self, phone_number: str, code: str, tenant_id: str,
                                 user_id: str, expires_at: datetime) -> str:
        async with self.session() as session:
            verification = WhatsAppVerificationDB(
                phone_number=phone_number,
                code=code,
                tenant_id=tenant_id,
                user_id=user_id,
                expires_at=expires_at,
            )
            session.add(verification)
            await session.commit()
            return verification.id

    async def get_latest_verification(self, phone_number: str) -> Optional[WhatsAppVerificationDB]:
        """Most recent unverified code for a phone number"""
        async with self.session() as session:
            result = await session.execute(
                select(WhatsAppVerificationDB)
                .where(
                    WhatsAppVerificationDB.phone_number == phone_number,
                    WhatsAppVerificationDB.verified_at.is_(None),
                )
                .order_by(WhatsAppVerificationDB.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def record_verification_attempt(self, verification_id: str, verified_at: Optional[datetime] = None):
        async with self.session() as session:
            values = {"attempts": WhatsAppVerificationDB.attempts + 1}
            if verified_at is not None:
                values["verified_at"] = verified_at
            await session.execute(
                update(WhatsAppVerificationDB)
                .where(WhatsAppVerificationDB.id == verification_id)
                .values(**values)
            )
            await session.commit()
