"""
Idempotent persistence of inbound messages

Every delivery of a platform message goes through one atomic
INSERT ... ON CONFLICT (message_id) DO UPDATE SET updated_at statement.
The caller learns whether its call created the row; only that caller may
perform side effects (uploads, replies) for the message.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, update, func
from sqlalchemy.dialects import postgresql, sqlite

from database import (
    DatabaseManager, CommunicationMessageDB, QueryAnalyticsDB,
    SlackUserMappingDB, WhatsAppMappingDB, new_id, utcnow
)
from models import MessageEnvelope, StoredMessage
from monitoring import logger

EMPTY_MESSAGE_PLACEHOLDER = "[Empty message]"
FILE_UPLOAD_PLACEHOLDER_PREFIX = "[File upload"

def file_upload_placeholder(count: int) -> str:
    noun = "file" if count == 1 else "files"
    return f"{FILE_UPLOAD_PLACEHOLDER_PREFIX}: {count} {noun}]"

@dataclass
class UpsertResult:
    id: str
    created: bool      # True only for the call that inserted the row
    is_query: bool

def _dialect_insert(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise ValueError(f"Upsert is not supported for database dialect '{dialect_name}'")

def _to_stored_message(row: CommunicationMessageDB) -> StoredMessage:
    return StoredMessage(
        id=row.id,
        message_id=row.message_id,
        platform=row.platform,
        sender=row.sender,
        content=row.content,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        is_query=bool(row.is_query),
        parsed_query=row.parsed_query,
        response=row.response,
        processing_time_ms=row.processing_time_ms,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

class MessageStore:
    """Message persistence keyed on the platform message id"""

    def __init__(self, db: DatabaseManager, classifier):
        self.db = db
        self.classifier = classifier

    async def _compute_is_query(self, text: str) -> bool:
        if text == EMPTY_MESSAGE_PLACEHOLDER or text.startswith(FILE_UPLOAD_PLACEHOLDER_PREFIX):
            return False
        try:
            return await self.classifier.is_query_supported(text)
        except Exception as e:
            logger.warning("is_query_check_failed", error=str(e))
            return False

    async def upsert(self, envelope: MessageEnvelope, tenant_id: Optional[str] = None,
                     user_id: Optional[str] = None, content: Optional[str] = None) -> UpsertResult:
        """Store the envelope and report whether this call created the row"""
        text = content if content is not None else (envelope.content or "")
        if not text.strip():
            text = EMPTY_MESSAGE_PLACEHOLDER

        is_query = await self._compute_is_query(text)

        table = CommunicationMessageDB.__table__
        now = utcnow()
        candidate_id = new_id()
        stmt = _dialect_insert(self.db.dialect_name)(table).values(
            id=candidate_id,
            message_id=envelope.message_id,
            platform=envelope.platform.value,
            sender=envelope.sender,
            content=text,
            tenant_id=tenant_id,
            user_id=user_id,
            is_query=is_query,
            metadata=envelope.metadata,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.message_id],
            set_={"updated_at": now},
        ).returning(table.c.id)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            stored_id = result.scalar_one()
            await session.commit()

        created = stored_id == candidate_id
        logger.info(
            "message_stored",
            message_id=envelope.message_id,
            stored_id=stored_id,
            platform=envelope.platform.value,
            created=created,
            is_query=is_query,
        )
        return UpsertResult(id=stored_id, created=created, is_query=is_query)

    async def store(self, envelope: MessageEnvelope, tenant_id: Optional[str] = None,
                    user_id: Optional[str] = None, content: Optional[str] = None) -> str:
        """Idempotent store; the same message_id always yields the same id"""
        result = await self.upsert(envelope, tenant_id, user_id, content)
        return result.id

    async def update_with_query_result(self, stored_id: str, parsed_query: Optional[Dict[str, Any]],
                                       response: Dict[str, Any], processing_time_ms: int):
        confidence = parsed_query.get("confidence") if parsed_query else None
        async with self.db.session() as session:
            await session.execute(
                update(CommunicationMessageDB)
                .where(CommunicationMessageDB.id == stored_id)
                .values(
                    parsed_query=parsed_query,
                    query_confidence=confidence,
                    response=response,
                    processing_time_ms=processing_time_ms,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def record_query_analytics(self, stored_id: Optional[str], tenant_id: str, platform: str,
                                     intent: str, entities: Optional[Dict[str, Any]],
                                     execution_time_ms: int, result_count: int,
                                     error: Optional[str] = None):
        async with self.db.session() as session:
            session.add(QueryAnalyticsDB(
                message_id=stored_id,
                tenant_id=tenant_id,
                platform=platform,
                intent=intent,
                entities=entities,
                execution_time_ms=execution_time_ms,
                result_count=result_count,
                error=error,
            ))
            await session.commit()

    # === Reads ===

    async def get_message(self, message_id: str) -> Optional[StoredMessage]:
        """Look up by platform message id"""
        async with self.db.session() as session:
            result = await session.execute(
                select(CommunicationMessageDB).where(CommunicationMessageDB.message_id == message_id)
            )
            row = result.scalars().first()
            return _to_stored_message(row) if row else None

    async def count_messages(self, message_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count()).select_from(CommunicationMessageDB)
                .where(CommunicationMessageDB.message_id == message_id)
            )
            return result.scalar_one()

    async def get_messages(self, tenant_id: str, platform: Optional[str] = None,
                           limit: int = 50, offset: int = 0) -> List[StoredMessage]:
        query = select(CommunicationMessageDB).where(CommunicationMessageDB.tenant_id == tenant_id)
        if platform:
            query = query.where(CommunicationMessageDB.platform == platform)
        query = query.order_by(CommunicationMessageDB.created_at.desc()).limit(limit).offset(offset)

        async with self.db.session() as session:
            result = await session.execute(query)
            return [_to_stored_message(row) for row in result.scalars().all()]

    async def get_recent_queries(self, tenant_id: str, limit: int = 10) -> List[StoredMessage]:
        async with self.db.session() as session:
            result = await session.execute(
                select(CommunicationMessageDB)
                .where(
                    CommunicationMessageDB.tenant_id == tenant_id,
                    CommunicationMessageDB.is_query.is_(True),
                )
                .order_by(CommunicationMessageDB.created_at.desc())
                .limit(limit)
            )
            return [_to_stored_message(row) for row in result.scalars().all()]

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Per-tenant communication counts"""
        async with self.db.session() as session:
            by_platform = await session.execute(
                select(CommunicationMessageDB.platform, func.count())
                .where(CommunicationMessageDB.tenant_id == tenant_id)
                .group_by(CommunicationMessageDB.platform)
            )
            platform_counts = {platform: count for platform, count in by_platform.all()}

            queries = await session.execute(
                select(func.count()).select_from(CommunicationMessageDB).where(
                    CommunicationMessageDB.tenant_id == tenant_id,
                    CommunicationMessageDB.is_query.is_(True),
                )
            )
            whatsapp_users = await session.execute(
                select(func.count()).select_from(WhatsAppMappingDB)
                .where(WhatsAppMappingDB.tenant_id == tenant_id)
            )
            slack_users = await session.execute(
                select(func.count(func.distinct(SlackUserMappingDB.slack_user_id)))
                .where(SlackUserMappingDB.tenant_id == tenant_id)
            )

        return {
            "tenant_id": tenant_id,
            "total_messages": sum(platform_counts.values()),
            "messages_by_platform": platform_counts,
            "total_queries": queries.scalar_one(),
            "whatsapp_users": whatsapp_users.scalar_one(),
            "slack_users": slack_users.scalar_one(),
        }

    async def delete_old_messages(self, days: int) -> int:
        """Remove messages (and their analytics) older than the retention window"""
        cutoff = utcnow() - timedelta(days=days)
        old_ids = select(CommunicationMessageDB.id).where(CommunicationMessageDB.created_at < cutoff)

        async with self.db.session() as session:
            await session.execute(
                delete(QueryAnalyticsDB).where(QueryAnalyticsDB.message_id.in_(old_ids))
            )
            result = await session.execute(
                delete(CommunicationMessageDB).where(CommunicationMessageDB.created_at < cutoff)
            )
            await session.commit()

        deleted = result.rowcount or 0
        logger.info("old_messages_deleted", days=days, deleted=deleted)
        return deleted
