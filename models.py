"""
Data models for the inbound message pipeline
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional, Any

class Platform(str, Enum):
    """Messaging platforms the router accepts"""
    WHATSAPP = "whatsapp"
    SLACK = "slack"

class QueryIntent(str, Enum):
    """Closed set of classifier intents"""
    COUNT = "count"
    LIST = "list"
    SEARCH = "search"
    AGGREGATE = "aggregate"
    STATUS = "status"
    GREETING = "greeting"
    CASUAL = "casual"
    FINANCIAL = "financial"
    HELP = "help"
    UNKNOWN = "unknown"

CONVERSATIONAL_INTENTS = frozenset({
    QueryIntent.GREETING,
    QueryIntent.CASUAL,
    QueryIntent.FINANCIAL,
    QueryIntent.HELP,
    QueryIntent.UNKNOWN,
})

@dataclass
class Attachment:
    """File attached to an inbound message"""
    id: str
    mime_type: str
    file_name: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None

@dataclass
class MessageEnvelope:
    """Normalized, platform-agnostic inbound message"""
    message_id: str            # Unique per platform, dedup key
    platform: Platform
    sender: str                # Phone number (WhatsApp) or Slack user ID
    timestamp: datetime
    content: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

@dataclass
class TenantContext:
    """Tenant a chat sender is currently operating in"""
    tenant_id: str
    tenant_name: str
    tenant_slug: str

@dataclass
class TenantAccess:
    """A tenant the sender may act in, and the internal user they act as there"""
    tenant: TenantContext
    user_id: str

@dataclass
class SlackWorkspace:
    """Installed Slack workspace"""
    workspace_id: str
    tenant_id: str
    bot_token: str
    bot_user_id: Optional[str] = None
    team_name: Optional[str] = None
    is_active: bool = True

@dataclass
class StoredMessage:
    """Persisted inbound message"""
    id: str
    message_id: str
    platform: str
    sender: str
    content: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    is_query: bool = False
    parsed_query: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None
    processing_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

@dataclass
class ParsedQuery:
    """Structured representation of a natural-language request"""
    intent: QueryIntent
    confidence: float
    entities: Dict[str, Any] = field(default_factory=dict)
    aggregation: Optional[Dict[str, Any]] = None   # {type, field, group_by}
    sorting: Optional[Dict[str, Any]] = None       # {field, direction}
    original_text: str = ""

    @property
    def is_conversational(self) -> bool:
        return self.intent in CONVERSATIONAL_INTENTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "entities": self.entities,
            "aggregation": self.aggregation,
            "sorting": self.sorting,
            "original_text": self.original_text,
        }

@dataclass
class QueryResult:
    """Executor output"""
    data: Any
    confidence: float = 1.0
    total_count: Optional[int] = None
    execution_time_ms: int = 0
    error: Optional[str] = None

@dataclass
class ResponseAction:
    """Quick action offered alongside a response"""
    label: str
    action: str
    params: Dict[str, Any] = field(default_factory=dict)

@dataclass
class ResponseMetadata:
    processing_time_ms: int
    confidence: float
    query_id: str
    filters_applied: List[str] = field(default_factory=list)
    total_count: Optional[int] = None
    response_text: Optional[str] = None   # Authoritative pre-rendered text
    error_code: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

@dataclass
class ResponseResults:
    type: str                  # count | list | aggregate | summary
    data: Any
    visualization: Optional[Dict[str, Any]] = None

@dataclass
class UnifiedResponse:
    """Platform-agnostic response to a query"""
    query: str
    intent: QueryIntent
    results: ResponseResults
    metadata: ResponseMetadata
    suggestions: List[str] = field(default_factory=list)
    actions: List[ResponseAction] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.metadata.error_code is not None

    @property
    def is_conversational(self) -> bool:
        return self.intent in CONVERSATIONAL_INTENTS and not self.is_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "intent": self.intent.value,
            "results": {
                "type": self.results.type,
                "data": self.results.data,
                "visualization": self.results.visualization,
            },
            "metadata": {
                "processing_time_ms": self.metadata.processing_time_ms,
                "confidence": self.metadata.confidence,
                "filters_applied": self.metadata.filters_applied,
                "total_count": self.metadata.total_count,
                "query_id": self.metadata.query_id,
                "response_text": self.metadata.response_text,
                "error_code": self.metadata.error_code,
                "suggestions": self.metadata.suggestions,
            },
            "suggestions": self.suggestions,
            "actions": [
                {"label": a.label, "action": a.action, "params": a.params}
                for a in self.actions
            ],
        }

@dataclass
class FormattedMessage:
    """Platform-rendered response"""
    text: str
    quick_replies: List[str] = field(default_factory=list)
    blocks: List[Dict[str, Any]] = field(default_factory=list)

@dataclass
class FileOutcome:
    """Result of processing one attachment"""
    file_name: str
    success: bool
    file_id: Optional[str] = None
    error: Optional[str] = None

@dataclass
class ProcessingResult:
    """Outcome of routing one envelope"""
    success: bool
    response_text: str = ""
    file_ids: List[str] = field(default_factory=list)
    processed_files: List[FileOutcome] = field(default_factory=list)
    error: Optional[str] = None
    duplicate: bool = False
    stored_message_id: Optional[str] = None
    query_id: Optional[str] = None
    quick_replies: List[str] = field(default_factory=list)
    blocks: List[Dict[str, Any]] = field(default_factory=list)

@dataclass
class SendResult:
    """Outcome of an outbound platform message"""
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
