"""Tests for FCM delivery over a mocked HTTP transport."""
import asyncio
import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from services.push_notification import TOKEN_URL, FcmNotificationSender

SEND_URL = "https://fcm.googleapis.com/v1/projects/strath-test/messages:send"


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def service_account(private_key):
    pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return {"client_email": "push@strath-test.iam.gserviceaccount.com", "private_key": pem}


class FcmBackend:
    """Answers the token and send endpoints and keeps every request."""

    def __init__(self, send_status: int = 200, token_error: bool = False):
        self.send_status = send_status
        self.token_error = token_error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            if self.token_error:
                raise httpx.ConnectError("token endpoint down", request=request)
            return httpx.Response(200, json={"access_token": "ya29.test", "expires_in": 3600})
        if str(request.url) == SEND_URL:
            return httpx.Response(self.send_status, json={"name": "projects/strath-test/messages/1"})
        return httpx.Response(404)

    def hits(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]


def _sender(service_account, backend):
    return FcmNotificationSender(service_account, "strath-test", transport=httpx.MockTransport(backend))


def _unb64(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


class TestFcmNotificationSender:
    def test_message_shape(self, service_account):
        backend = FcmBackend()

        ok = asyncio.run(
            _sender(service_account, backend).send("device-1", "Hi", "3 new matches", {"drop_number": 202642})
        )

        assert ok is True
        sent = backend.hits(SEND_URL)[0]
        assert sent.headers["Authorization"] == "Bearer ya29.test"
        message = json.loads(sent.content)["message"]
        assert message["token"] == "device-1"
        assert message["notification"] == {"title": "Hi", "body": "3 new matches"}
        assert message["data"] == {"drop_number": "202642"}
        assert message["android"]["notification"]["channel_id"] == "weekly_drops"

    def test_assertion_is_signed_by_the_service_account(self, service_account, private_key):
        backend = FcmBackend()

        asyncio.run(_sender(service_account, backend).send("device-1", "Hi", "Body"))

        form = parse_qs(backend.hits(TOKEN_URL)[0].content.decode())
        assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
        header, claims, signature = form["assertion"][0].split(".")
        private_key.public_key().verify(
            _unb64(signature), f"{header}.{claims}".encode(), padding.PKCS1v15(), hashes.SHA256()
        )
        decoded = json.loads(_unb64(claims))
        assert decoded["iss"] == service_account["client_email"]
        assert decoded["aud"] == TOKEN_URL

    def test_access_token_is_reused(self, service_account):
        backend = FcmBackend()
        sender = _sender(service_account, backend)

        async def twice():
            return [await sender.send("device-1", "Hi", "One"), await sender.send("device-2", "Hi", "Two")]

        assert asyncio.run(twice()) == [True, True]
        assert len(backend.hits(TOKEN_URL)) == 1
        assert len(backend.hits(SEND_URL)) == 2

    def test_rejected_send_returns_false(self, service_account):
        backend = FcmBackend(send_status=500)

        assert asyncio.run(_sender(service_account, backend).send("device-1", "Hi", "Body")) is False

    def test_transport_error_returns_false(self, service_account):
        backend = FcmBackend(token_error=True)

        assert asyncio.run(_sender(service_account, backend).send("device-1", "Hi", "Body")) is False
        assert backend.hits(SEND_URL) == []

    def test_incomplete_service_account_returns_false(self):
        backend = FcmBackend()
        sender = _sender({"client_email": "push@strath-test.iam.gserviceaccount.com"}, backend)

        assert asyncio.run(sender.send("device-1", "Hi", "Body")) is False

    def test_nothing_sent_without_token_or_config(self, service_account):
        backend = FcmBackend()

        assert asyncio.run(_sender(service_account, backend).send("", "Hi", "Body")) is False
        assert asyncio.run(_sender({}, backend).send("device-1", "Hi", "Body")) is False
        assert backend.requests == []
