import hashlib
import hmac
import json

import httpx
import pytest

from errors import AttachmentDownloadError
from models import Attachment, Platform
from platform_clients import (
    WHATSAPP_MAX_BODY, AttachmentDownloader, SlackClient, TwilioClient, compute_twilio_signature,
    verify_slack_signature, verify_twilio_signature
)

SECRET = "8f742231b10e8888abcd99yyyzzz85a5"
BODY = b'{"type":"event_callback","event_id":"Ev1"}'


def slack_signature(body, timestamp, secret=SECRET):
    base = f"v0:{timestamp}:{body.decode()}".encode()
    return "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()


class TestSlackSignature:
    def test_valid(self):
        assert verify_slack_signature(SECRET, BODY, "1700000000", slack_signature(BODY, 1700000000),
                                      now=1700000100)

    def test_stale_timestamp(self):
        assert not verify_slack_signature(SECRET, BODY, "1700000000", slack_signature(BODY, 1700000000),
                                          now=1700000000 + 301)

    def test_tampered_body(self):
        signature = slack_signature(BODY, 1700000000)
        assert not verify_slack_signature(SECRET, BODY + b" ", "1700000000", signature, now=1700000000)

    @pytest.mark.parametrize("timestamp, signature", [("", "v0=abc"), ("abc", "v0=abc"), ("1700000000", "")])
    def test_missing_or_malformed_headers(self, timestamp, signature):
        assert not verify_slack_signature(SECRET, BODY, timestamp, signature, now=1700000000)


class TestTwilioSignature:
    URL = "https://example.test/whatsapp/webhook"
    PARAMS = {"MessageSid": "SM1", "From": "whatsapp:+14155550123", "Body": "hi"}

    def test_valid(self):
        signature = compute_twilio_signature("token", self.URL, self.PARAMS)
        assert verify_twilio_signature("token", self.URL, self.PARAMS, signature)

    def test_param_order_does_not_matter(self):
        signature = compute_twilio_signature("token", self.URL, self.PARAMS)
        reordered = dict(reversed(list(self.PARAMS.items())))
        assert verify_twilio_signature("token", self.URL, reordered, signature)

    def test_wrong_url_or_token(self):
        signature = compute_twilio_signature("token", self.URL, self.PARAMS)
        assert not verify_twilio_signature("token", self.URL + "/", self.PARAMS, signature)
        assert not verify_twilio_signature("other", self.URL, self.PARAMS, signature)
        assert not verify_twilio_signature("token", self.URL, self.PARAMS, "")


def mock_http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSlackClient:
    async def test_send_message_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "ts": "1700000000.000300"})

        async with mock_http(handler) as http:
            result = await SlackClient(http).send_message(
                "xoxb-1", "C1", "hello", thread_ts="1700000000.000100",
                blocks=[{"type": "divider"}],
            )

        assert result.ok
        assert result.message_id == "1700000000.000300"
        request = seen[0]
        assert request.url == "https://slack.com/api/chat.postMessage"
        assert request.headers["Authorization"] == "Bearer xoxb-1"
        assert json.loads(request.content) == {
            "channel": "C1", "text": "hello", "unfurl_links": False, "unfurl_media": False,
            "thread_ts": "1700000000.000100", "blocks": [{"type": "divider"}],
        }

    async def test_send_message_rejected(self):
        async with mock_http(lambda r: httpx.Response(200, json={"ok": False, "error": "channel_not_found"})) as http:
            result = await SlackClient(http).send_message("xoxb-1", "C404", "hello")

        assert not result.ok
        assert result.error == "channel_not_found"

    async def test_send_message_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with mock_http(handler) as http:
            result = await SlackClient(http).send_message("xoxb-1", "C1", "hello")

        assert not result.ok
        assert "connection refused" in result.error

    async def test_user_profile(self):
        def handler(request):
            assert request.url.params["user"] == "U1"
            return httpx.Response(200, json={"ok": True, "user": {
                "real_name": "Ana", "profile": {"email": "ana@acme.test"},
            }})

        async with mock_http(handler) as http:
            profile = await SlackClient(http).get_user_profile("xoxb-1", "U1")

        assert profile.email == "ana@acme.test"
        assert profile.real_name == "Ana"

    async def test_user_profile_refused(self):
        async with mock_http(lambda r: httpx.Response(200, json={"ok": False, "error": "user_not_found"})) as http:
            assert await SlackClient(http).get_user_profile("xoxb-1", "U1") is None

    async def test_download_rejects_sign_in_page(self):
        async with mock_http(lambda r: httpx.Response(200, html="<html>Sign in</html>")) as http:
            with pytest.raises(AttachmentDownloadError):
                await SlackClient(http).download_file("https://files.slack.com/f/1", "xoxb-1")


class TestTwilioClient:
    async def test_send_truncates_and_prefixes(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM_out"})

        async with mock_http(handler) as http:
            twilio = TwilioClient(http, "AC1", "token", "+14155550000")
            result = await twilio.send_message("+14155550123", "x" * 2000)

        assert result.ok
        assert result.message_id == "SM_out"
        form = httpx.QueryParams(seen[0].content.decode())
        assert form["From"] == "whatsapp:+14155550000"
        assert form["To"] == "whatsapp:+14155550123"
        assert len(form["Body"]) == WHATSAPP_MAX_BODY
        assert form["Body"].endswith("…")
        assert seen[0].url.path == "/2010-04-01/Accounts/AC1/Messages.json"

    async def test_send_without_credentials(self):
        async with mock_http(lambda r: httpx.Response(500)) as http:
            result = await TwilioClient(http, None, None, None).send_message("+1", "hi")

        assert not result.ok
        assert result.error == "Twilio is not configured"

    async def test_send_rejected(self):
        async with mock_http(lambda r: httpx.Response(400, json={"message": "Invalid To number"})) as http:
            result = await TwilioClient(http, "AC1", "token", "+1").send_message("+2", "hi")

        assert not result.ok
        assert result.error == "Invalid To number"


class TestAttachmentDownloader:
    async def test_whatsapp_media_fetched_directly(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"%PDF-1.4")

        async with mock_http(handler) as http:
            downloader = AttachmentDownloader(SlackClient(http), TwilioClient(http, "AC1", "token", "+1"))
            data = await downloader.download(
                Attachment(id="ME1", mime_type="application/pdf", url="https://api.twilio.com/media/ME1"),
                Platform.WHATSAPP,
            )

        assert data == b"%PDF-1.4"
        assert "Authorization" not in seen[0].headers

    async def test_http_error_status(self):
        async with mock_http(lambda r: httpx.Response(404)) as http:
            downloader = AttachmentDownloader(SlackClient(http), TwilioClient(http, None, None, None))
            with pytest.raises(AttachmentDownloadError, match="HTTP 404"):
                await downloader.download(
                    Attachment(id="ME1", mime_type="image/jpeg", url="https://api.twilio.com/media/ME1"),
                    Platform.WHATSAPP,
                )

    async def test_missing_url(self):
        async with mock_http(lambda r: httpx.Response(200)) as http:
            downloader = AttachmentDownloader(SlackClient(http), TwilioClient(http, None, None, None))
            with pytest.raises(AttachmentDownloadError, match="Missing download URL"):
                await downloader.download(Attachment(id="F1", mime_type="text/plain"), Platform.SLACK, "xoxb-1")

    async def test_slack_requires_bot_token(self):
        async with mock_http(lambda r: httpx.Response(200)) as http:
            downloader = AttachmentDownloader(SlackClient(http), TwilioClient(http, None, None, None))
            with pytest.raises(AttachmentDownloadError, match="bot token"):
                await downloader.download(
                    Attachment(id="F1", mime_type="text/plain", url="https://files.slack.com/f/1"),
                    Platform.SLACK,
                )
