import base64
import json
import logging
import time
from typing import Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

import config

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


class NotificationSender:
    """Best-effort push delivery. Implementations return False instead of raising."""

    async def send(self, token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
        raise NotImplementedError


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class FcmNotificationSender(NotificationSender):
    """FCM HTTP v1 sender authenticated with a Google service account."""

    def __init__(
        self,
        service_account: Optional[dict] = None,
        project_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if service_account is None and config.GOOGLE_SERVICE_ACCOUNT_JSON:
            service_account = json.loads(config.GOOGLE_SERVICE_ACCOUNT_JSON)
        self.service_account = service_account
        self.project_id = project_id or config.FIREBASE_PROJECT_ID or (service_account or {}).get("project_id")
        self.transport = transport
        self._access_token: Optional[str] = None
        self._expires_at = 0.0

    def _signed_assertion(self) -> str:
        sa = self.service_account
        now = int(time.time())
        header = _b64url(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
        claims = _b64url(json.dumps({
            "iss": sa["client_email"],
            "sub": sa["client_email"],
            "aud": TOKEN_URL,
            "iat": now,
            "exp": now + 3600,
            "scope": FCM_SCOPE,
        }).encode())
        signing_input = f"{header}.{claims}".encode()

        key = serialization.load_pem_private_key(sa["private_key"].encode(), password=None)
        signature = key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
        return f"{header}.{claims}.{_b64url(signature)}"

    async def _token(self, client: httpx.AsyncClient) -> str:
        now = time.time()
        if self._access_token and self._expires_at > now + 60:
            return self._access_token

        resp = await client.post(
            TOKEN_URL,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": self._signed_assertion(),
            },
        )
        resp.raise_for_status()
        data = resp.json()
        self._access_token = data["access_token"]
        self._expires_at = now + data.get("expires_in", 3600)
        return self._access_token

    async def send(self, token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
        if not self.service_account or not self.project_id or not token:
            return False

        message: dict = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "android": {
                    "priority": "high",
                    "notification": {"channel_id": "weekly_drops"},
                },
                "apns": {
                    "headers": {"apns-priority": "10"},
                    "payload": {
                        "aps": {"alert": {"title": title, "body": body}, "sound": "default"},
                    },
                },
            }
        }
        if data:
            # FCM data payloads must be string-valued
            message["message"]["data"] = {k: str(v) for k, v in data.items()}

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                access_token = await self._token(client)
                resp = await client.post(
                    f"https://fcm.googleapis.com/v1/projects/{self.project_id}/messages:send",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                    json=message,
                )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("FCM delivery error: %s", exc)
            return False

        if resp.status_code != 200:
            logger.error("FCM delivery failed %s: %s", resp.status_code, resp.text[:200])
            return False
        return True
