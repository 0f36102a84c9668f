"""
Shared fixtures: a throwaway SQLite database and stub collaborators.
"""

from types import SimpleNamespace

import pytest

from database import DatabaseManager
from errors import AttachmentDownloadError
from intent_classifier import CohereIntentClassifier
from models import ParsedQuery, QueryIntent, QueryResult, SendResult


class FakeCohereClient:
    """Stands in for cohere.AsyncClient; replies are consumed in order."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    async def chat(self, **kwargs):
        self.calls.append(kwargs)
        if not self.replies:
            raise RuntimeError("no fake reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(text=reply)


class StubClassifier:
    """Real regex query check, scripted parse results, summaries off by default."""

    def __init__(self, parsed=None, parse_error=None, summary=None, summary_error=None):
        self._regex = CohereIntentClassifier(client=FakeCohereClient())
        self.parsed = parsed
        self.parse_error = parse_error
        self.summary = summary
        self.summary_error = summary_error or RuntimeError("summary disabled")
        self.parse_calls = []
        self.summary_calls = []

    async def is_query_supported(self, text):
        return await self._regex.is_query_supported(text)

    async def parse_query(self, text, context):
        self.parse_calls.append((text, context))
        if self.parse_error:
            raise self.parse_error
        if self.parsed is not None:
            return self.parsed
        return ParsedQuery(intent=QueryIntent.COUNT, confidence=0.9, original_text=text)

    async def generate_summary(self, query, results):
        self.summary_calls.append((query, results))
        if self.summary is not None:
            return self.summary
        raise self.summary_error


class StubExecutor:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else QueryResult(data=3, total_count=3)
        self.error = error
        self.calls = []

    async def execute(self, parsed_query, tenant_id):
        self.calls.append((parsed_query, tenant_id))
        if self.error:
            raise self.error
        return self.result


class StubDownloader:
    """Serves bytes per attachment URL; URLs listed in `failing` raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def download(self, attachment, platform, bot_token=None):
        self.calls.append((attachment.url, platform, bot_token))
        if attachment.url in self.failing:
            raise AttachmentDownloadError("Download failed with HTTP 404")
        return f"bytes of {attachment.url}".encode()


class RecordingSlack:
    def __init__(self, profiles=None):
        self.sent = []
        self.profiles = profiles or {}

    async def send_message(self, bot_token, channel, text, thread_ts=None, blocks=None):
        self.sent.append({"bot_token": bot_token, "channel": channel, "text": text,
                          "thread_ts": thread_ts, "blocks": blocks})
        return SendResult(ok=True, message_id="1700000000.000200")

    async def get_user_profile(self, bot_token, user_id):
        return self.profiles.get(user_id)


class RecordingTwilio:
    configured = True

    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    async def send_message(self, to, body):
        self.sent.append({"to": to, "body": body})
        if not self.ok:
            return SendResult(ok=False, error="Twilio is not configured")
        return SendResult(ok=True, message_id="SM_reply")


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def tenant_user(db):
    """One tenant with one member; returns (tenant, user_id)."""
    tenant = await db.create_tenant("Acme Corp", "acme")
    user_id = await db.create_user("ana@acme.test", "Ana")
    await db.add_tenant_member(tenant.tenant_id, user_id)
    return tenant, user_id
