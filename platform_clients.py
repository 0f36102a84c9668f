"""
Outbound platform APIs (Slack Web API, Twilio Messages API) and webhook signature checks
"""

import base64
import hashlib
import hmac
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from errors import AttachmentDownloadError
from models import Attachment, Platform, SendResult
from monitoring import logger, metrics_collector

SLACK_API_BASE = "https://slack.com/api"
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

SLACK_SIGNATURE_WINDOW_SECONDS = 60 * 5
WHATSAPP_MAX_BODY = 1600
MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024

# === Signature verification ===

def verify_slack_signature(signing_secret: str, body: bytes, timestamp: str, signature: str,
                           now: Optional[float] = None) -> bool:
    """Verify Slack request signature (v0 HMAC-SHA256, 5 minute window)"""
    if not signing_secret or not timestamp or not signature:
        return False
    try:
        request_time = int(timestamp)
    except ValueError:
        return False

    current = now if now is not None else time.time()
    if abs(current - request_time) > SLACK_SIGNATURE_WINDOW_SECONDS:
        return False

    sig_basestring = f"v0:{timestamp}:{body.decode()}"
    computed_sig = "v0=" + hmac.new(
        signing_secret.encode(),
        sig_basestring.encode(),
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(computed_sig, signature)

def compute_twilio_signature(auth_token: str, url: str, params: Mapping) -> str:
    """Twilio's scheme: HMAC-SHA1 over the URL followed by sorted key+value pairs"""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()

def verify_twilio_signature(auth_token: str, url: str, params: Mapping, signature: str) -> bool:
    if not auth_token or not signature:
        return False
    return hmac.compare_digest(compute_twilio_signature(auth_token, url, params), signature)

# === Slack ===

@dataclass
class SlackUserProfile:
    user_id: str
    email: Optional[str] = None
    real_name: Optional[str] = None

class SlackClient:
    """Slack Web API calls made with a workspace bot token"""

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def send_message(self, bot_token: str, channel: str, text: str,
                           thread_ts: Optional[str] = None,
                           blocks: Optional[List[Dict[str, Any]]] = None) -> SendResult:
        """Post a message to a Slack channel"""
        payload = {
            "channel": channel,
            "text": text,
            "unfurl_links": False,
            "unfurl_media": False,
        }
        if thread_ts:
            payload["thread_ts"] = thread_ts
        if blocks:
            payload["blocks"] = blocks

        try:
            response = await self.http.post(
                f"{SLACK_API_BASE}/chat.postMessage",
                headers={"Authorization": f"Bearer {bot_token}"},
                json=payload,
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("slack_send_failed", channel=channel, error=str(e))
            metrics_collector.record_outbound_message(Platform.SLACK.value, ok=False)
            return SendResult(ok=False, error=str(e))

        ok = bool(data.get("ok"))
        metrics_collector.record_outbound_message(Platform.SLACK.value, ok=ok)
        if not ok:
            logger.error("slack_send_rejected", channel=channel, error=data.get("error"),
                         status_code=response.status_code)
            return SendResult(ok=False, error=data.get("error", f"HTTP {response.status_code}"))
        return SendResult(ok=True, message_id=data.get("ts"))

    async def get_user_profile(self, bot_token: str, user_id: str) -> Optional[SlackUserProfile]:
        """users.info lookup; None when Slack refuses or the call fails"""
        try:
            response = await self.http.get(
                f"{SLACK_API_BASE}/users.info",
                headers={"Authorization": f"Bearer {bot_token}"},
                params={"user": user_id},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("slack_user_lookup_failed", user_id=user_id, error=str(e))
            return None

        if not data.get("ok"):
            logger.warning("slack_user_lookup_rejected", user_id=user_id, error=data.get("error"))
            return None

        user = data.get("user") or {}
        profile = user.get("profile") or {}
        return SlackUserProfile(
            user_id=user_id,
            email=profile.get("email"),
            real_name=user.get("real_name") or profile.get("real_name"),
        )

    async def download_file(self, url: str, bot_token: str) -> bytes:
        """Fetch a private file; the bot token is the bearer credential"""
        try:
            response = await self.http.get(
                url,
                headers={"Authorization": f"Bearer {bot_token}"},
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise AttachmentDownloadError(f"Download failed: {e}") from e

        if response.status_code != 200:
            raise AttachmentDownloadError(f"Download failed with HTTP {response.status_code}")
        # Slack answers unauthorised file requests with its sign-in page
        if response.headers.get("content-type", "").startswith("text/html"):
            raise AttachmentDownloadError("Download returned an HTML page; check the bot's files:read scope")
        return response.content

# === Twilio ===

class TwilioClient:
    """Twilio Messages API for WhatsApp replies"""

    def __init__(self, http: httpx.AsyncClient, account_sid: Optional[str],
                 auth_token: Optional[str], from_number: Optional[str]):
        self.http = http
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @staticmethod
    def _address(number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    async def send_message(self, to: str, body: str) -> SendResult:
        if not self.configured:
            logger.error("twilio_not_configured", to=to)
            return SendResult(ok=False, error="Twilio is not configured")

        if len(body) > WHATSAPP_MAX_BODY:
            body = body[:WHATSAPP_MAX_BODY - 1] + "…"

        try:
            response = await self.http.post(
                f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json",
                auth=(self.account_sid, self.auth_token),
                data={
                    "From": self._address(self.from_number),
                    "To": self._address(to),
                    "Body": body,
                },
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("twilio_send_failed", to=to, error=str(e))
            metrics_collector.record_outbound_message(Platform.WHATSAPP.value, ok=False)
            return SendResult(ok=False, error=str(e))

        ok = response.status_code in (200, 201)
        metrics_collector.record_outbound_message(Platform.WHATSAPP.value, ok=ok)
        if not ok:
            logger.error("twilio_send_rejected", to=to, status_code=response.status_code,
                         error=data.get("message"))
            return SendResult(ok=False, error=data.get("message", f"HTTP {response.status_code}"))
        return SendResult(ok=True, message_id=data.get("sid"))

    async def download_media(self, url: str) -> bytes:
        """Fetch inbound media directly from the URL in the webhook"""
        try:
            response = await self.http.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise AttachmentDownloadError(f"Download failed: {e}") from e
        if response.status_code != 200:
            raise AttachmentDownloadError(f"Download failed with HTTP {response.status_code}")
        return response.content

# === Attachment download ===

class AttachmentDownloader:
    """Fetches attachment bytes the way each platform requires"""

    def __init__(self, slack: SlackClient, twilio: TwilioClient):
        self.slack = slack
        self.twilio = twilio

    async def download(self, attachment: Attachment, platform: Platform,
                       bot_token: Optional[str] = None) -> bytes:
        if not attachment.url:
            raise AttachmentDownloadError("Missing download URL")

        if platform is Platform.SLACK:
            if not bot_token:
                raise AttachmentDownloadError("Missing Slack bot token for file download")
            data = await self.slack.download_file(attachment.url, bot_token)
        elif platform is Platform.WHATSAPP:
            data = await self.twilio.download_media(attachment.url)
        else:
            raise ValueError(f"Unsupported platform: {platform}")

        if len(data) > MAX_ATTACHMENT_BYTES:
            raise AttachmentDownloadError(
                f"File is larger than {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB"
            )
        return data

