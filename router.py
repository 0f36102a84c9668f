"""
Message router: the orchestrator between a normalized envelope and a reply

Branch is chosen only from whether the envelope has text and/or attachments:
  file-only  -> store placeholder, upload every attachment
  text-only  -> store, query pipeline or static guidance
  mixed      -> store, upload, then evaluate the text as a query
  empty      -> generic reply, nothing stored
Storage happens before any side effect; a delivery whose upsert did not
create the row is a retry and gets no uploads and no reply.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from blob_store import UploadMetadata
from formatters import formatter_for
from message_store import MessageStore, file_upload_placeholder
from models import FileOutcome, FormattedMessage, MessageEnvelope, ProcessingResult
from monitoring import logger, metrics_collector, MetricsCollector
from query_pipeline import QueryOutcome, QueryPipeline

EMPTY_MESSAGE_REPLY = (
    "👋 Send me files to upload, or ask a question about your documents, like "
    "'How many unprocessed files do I have?'"
)
NON_QUERY_REPLY = (
    "Message received. Send me questions about your files like 'How many unprocessed "
    "files do I have?' or 'Show me invoices from this month'."
)
PROCESSING_NOTE = "I'll process them shortly."

class EnvelopeKind(str, Enum):
    FILE_ONLY = "file_only"
    TEXT_ONLY = "text_only"
    MIXED = "mixed"
    EMPTY = "empty"

def classify_envelope(envelope: MessageEnvelope) -> EnvelopeKind:
    if envelope.has_content and envelope.has_attachments:
        return EnvelopeKind.MIXED
    if envelope.has_attachments:
        return EnvelopeKind.FILE_ONLY
    if envelope.has_content:
        return EnvelopeKind.TEXT_ONLY
    return EnvelopeKind.EMPTY

@dataclass
class RouteContext:
    """Resolved identity the envelope is processed under"""
    tenant_id: str
    user_id: Optional[str] = None
    bot_token: Optional[str] = None   # Slack only, for private file downloads

def _plural(count: int, noun: str = "file") -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"

def summarize_uploads(outcomes: List[FileOutcome], note: Optional[str] = None) -> str:
    """Acknowledgment of succeeded files (plus note) followed by a trailer of failed ones"""
    succeeded = [o for o in outcomes if o.success]
    failed = [o for o in outcomes if not o.success]

    parts = []
    if succeeded:
        lines = [f"✅ Received {_plural(len(succeeded))}:"]
        lines.extend(f"• {o.file_name}" for o in succeeded)
        parts.append("\n".join(lines))
        if note:
            parts.append(note)
    if failed:
        lines = [f"⚠️ Failed to upload {_plural(len(failed))}:"]
        lines.extend(f"• {o.file_name}: {o.error}" for o in failed)
        parts.append("\n".join(lines))
    return "\n\n".join(parts)

def all_failed_text(outcomes: List[FileOutcome]) -> str:
    lines = ["❌ I couldn't upload your files:"]
    lines.extend(f"• {o.file_name}: {o.error}" for o in outcomes)
    lines.append("")
    lines.append("Please try sending them again.")
    return "\n".join(lines)

class MessageRouter:
    """Routes one envelope through storage, file handling and the query pipeline"""

    def __init__(self, store: MessageStore, blob_store, pipeline: QueryPipeline, downloader,
                 metrics: MetricsCollector = metrics_collector):
        self.store = store
        self.blob_store = blob_store
        self.pipeline = pipeline
        self.downloader = downloader
        self.metrics = metrics

    async def route(self, envelope: MessageEnvelope, context: RouteContext) -> ProcessingResult:
        kind = classify_envelope(envelope)
        platform = envelope.platform.value
        self.metrics.record_message(platform, kind.value)
        logger.info("routing_message", message_id=envelope.message_id, platform=platform,
                    kind=kind.value, tenant_id=context.tenant_id,
                    attachments=len(envelope.attachments))

        if kind is EnvelopeKind.EMPTY:
            return ProcessingResult(success=True, response_text=EMPTY_MESSAGE_REPLY)

        placeholder = file_upload_placeholder(len(envelope.attachments)) if kind is EnvelopeKind.FILE_ONLY else None
        stored = await self.store.upsert(envelope, context.tenant_id, context.user_id, placeholder)
        if not stored.created:
            logger.info("duplicate_delivery_skipped", message_id=envelope.message_id,
                        stored_id=stored.id, platform=platform)
            self.metrics.record_duplicate(platform)
            return ProcessingResult(success=True, duplicate=True, stored_message_id=stored.id)

        if kind is EnvelopeKind.FILE_ONLY:
            result = await self._route_files_only(envelope, context)
        elif kind is EnvelopeKind.TEXT_ONLY:
            result = await self._route_text_only(envelope, context, stored.id, stored.is_query)
        elif kind is EnvelopeKind.MIXED:
            result = await self._route_mixed(envelope, context, stored.id, stored.is_query)
        else:
            raise ValueError(f"Unhandled envelope kind: {kind}")

        result.stored_message_id = stored.id
        return result

    # === Branches ===

    async def _route_files_only(self, envelope: MessageEnvelope, context: RouteContext) -> ProcessingResult:
        outcomes = await self._process_attachments(envelope, context)
        file_ids = [o.file_id for o in outcomes if o.success]

        if not file_ids:
            return ProcessingResult(
                success=False,
                response_text=all_failed_text(outcomes),
                processed_files=outcomes,
                error=f"All {_plural(len(outcomes))} failed to upload",
            )

        text = summarize_uploads(outcomes, note=PROCESSING_NOTE)
        return ProcessingResult(success=True, response_text=text, file_ids=file_ids,
                                processed_files=outcomes)

    async def _route_text_only(self, envelope: MessageEnvelope, context: RouteContext,
                               stored_id: str, is_query: bool) -> ProcessingResult:
        if not is_query:
            return ProcessingResult(success=True, response_text=NON_QUERY_REPLY)

        outcome, formatted = await self._answer(envelope, context, stored_id)
        return ProcessingResult(
            success=True,
            response_text=formatted.text,
            error=outcome.response.metadata.error_code,
            query_id=outcome.response.metadata.query_id,
            quick_replies=formatted.quick_replies,
            blocks=formatted.blocks,
        )

    async def _route_mixed(self, envelope: MessageEnvelope, context: RouteContext,
                           stored_id: str, is_query: bool) -> ProcessingResult:
        # Uploads first so the answer can reference the new files
        outcomes = await self._process_attachments(envelope, context)
        file_ids = [o.file_id for o in outcomes if o.success]
        upload_text = all_failed_text(outcomes) if not file_ids else summarize_uploads(outcomes)
        upload_error = None if file_ids else f"All {_plural(len(outcomes))} failed to upload"

        if not is_query:
            return ProcessingResult(
                success=bool(file_ids),
                response_text=f"{upload_text}\n\n📝 Your message: \"{envelope.content.strip()}\"",
                file_ids=file_ids,
                processed_files=outcomes,
                error=upload_error,
            )

        outcome, formatted = await self._answer(envelope, context, stored_id)
        return ProcessingResult(
            success=bool(file_ids),
            response_text=f"{upload_text}\n\n{formatted.text}",
            file_ids=file_ids,
            processed_files=outcomes,
            error=upload_error or outcome.response.metadata.error_code,
            query_id=outcome.response.metadata.query_id,
            quick_replies=formatted.quick_replies,
            blocks=formatted.blocks,
        )

    # === Helpers ===

    async def _answer(self, envelope: MessageEnvelope, context: RouteContext,
                      stored_id: str) -> Tuple[QueryOutcome, FormattedMessage]:
        text = envelope.content.strip()
        outcome = await self.pipeline.process(text, context.tenant_id, context.user_id,
                                              envelope.platform, stored_id)
        formatted = formatter_for(envelope.platform).format(outcome.response)
        await self._save_query_result(stored_id, outcome)
        return outcome, formatted

    async def _save_query_result(self, stored_id: str, outcome: QueryOutcome):
        try:
            await self.store.update_with_query_result(
                stored_id,
                outcome.parsed_query.to_dict() if outcome.parsed_query else None,
                outcome.response.to_dict(),
                outcome.response.metadata.processing_time_ms,
            )
        except Exception as e:
            # The reply is still sent; only the stored copy of the answer is missing
            logger.warning("query_result_save_failed", stored_id=stored_id, error=str(e))

    async def _process_attachments(self, envelope: MessageEnvelope, context: RouteContext) -> List[FileOutcome]:
        """Download and store each attachment in order, continuing past failures"""
        outcomes = []
        for index, attachment in enumerate(envelope.attachments):
            file_name = attachment.file_name or f"attachment_{index + 1}"
            try:
                data = await self.downloader.download(attachment, envelope.platform, context.bot_token)
                stored = await self.blob_store.upload(data, UploadMetadata(
                    file_name=file_name,
                    mime_type=attachment.mime_type,
                    size=attachment.size or len(data),
                    tenant_id=context.tenant_id,
                    uploaded_by=context.user_id,
                    source=envelope.platform.value,
                    metadata={
                        "message_id": envelope.message_id,
                        "attachment_id": attachment.id,
                        "sender": envelope.sender,
                    },
                ))
            except Exception as e:
                logger.warning("attachment_failed", message_id=envelope.message_id,
                               file_name=file_name, error=str(e))
                self.metrics.record_file_upload(envelope.platform.value, success=False)
                outcomes.append(FileOutcome(file_name=file_name, success=False, error=str(e)))
                continue

            self.metrics.record_file_upload(envelope.platform.value, success=True)
            outcomes.append(FileOutcome(file_name=stored.file_name, success=True, file_id=stored.id))
        return outcomes
