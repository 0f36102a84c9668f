"""
Service wiring: everything the HTTP layer needs, constructed once per process
"""

from dataclasses import dataclass

import httpx

from blob_store import LocalBlobStore
from config import Settings
from database import DatabaseManager
from identity import (
    IdentityResolver, LinkingTokenService, PhoneVerificationService, TenantContextCache
)
from intent_classifier import CohereIntentClassifier
from message_store import MessageStore
from platform_clients import AttachmentDownloader, SlackClient, TwilioClient
from query_executor import SqlQueryExecutor
from query_pipeline import QueryPipeline
from responses import UnifiedResponseGenerator
from router import MessageRouter
from webhooks import WebhookProcessor

HTTP_TIMEOUT_SECONDS = 30.0

@dataclass
class Services:
    settings: Settings
    db: DatabaseManager
    http: httpx.AsyncClient
    slack: SlackClient
    twilio: TwilioClient
    store: MessageStore
    identity: IdentityResolver
    linking_tokens: LinkingTokenService
    phone_verification: PhoneVerificationService
    router: MessageRouter
    webhooks: WebhookProcessor

    async def close(self):
        await self.http.aclose()
        await self.db.close()

def build_services(settings: Settings, db: DatabaseManager = None,
                   http: httpx.AsyncClient = None, classifier=None) -> Services:
    """Construct the object graph; db, http and classifier may be injected for tests"""
    db = db or DatabaseManager(settings.database_url)
    http = http or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    classifier = classifier or CohereIntentClassifier(settings.cohere_api_key, settings.cohere_model)

    slack = SlackClient(http)
    twilio = TwilioClient(http, settings.twilio_account_sid, settings.twilio_auth_token,
                          settings.twilio_whatsapp_number)
    store = MessageStore(db, classifier)

    linking_tokens = LinkingTokenService(db, settings.base_url)
    identity = IdentityResolver(db, slack, TenantContextCache(), linking_tokens, settings.base_url)

    pipeline = QueryPipeline(classifier, SqlQueryExecutor(db), UnifiedResponseGenerator(), store=store)
    router = MessageRouter(
        store,
        LocalBlobStore(settings.blob_storage_path, db),
        pipeline,
        AttachmentDownloader(slack, twilio),
    )

    return Services(
        settings=settings,
        db=db,
        http=http,
        slack=slack,
        twilio=twilio,
        store=store,
        identity=identity,
        linking_tokens=linking_tokens,
        phone_verification=PhoneVerificationService(db, twilio),
        router=router,
        webhooks=WebhookProcessor(db, identity, router, slack, twilio),
    )
