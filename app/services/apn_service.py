# file: services/apn_service.py

import logging
import re
import time
from pathlib import Path
from typing import Optional, Protocol

import httpx
import jwt

from app.config import APNConfig

logger = logging.getLogger(__name__)

APN_PRODUCTION_HOST = "https://api.push.apple.com"
APN_SANDBOX_HOST = "https://api.sandbox.push.apple.com"
DEFAULT_BUNDLE_ID = "com.nicolasgutar.APNInvestio.test"

# Apple rejects provider tokens older than an hour; refresh well before that.
PROVIDER_TOKEN_TTL_SECONDS = 50 * 60
NOTIFICATION_EXPIRY_SECONDS = 3600

_KEY_FILE = re.compile(r"AuthKey_([A-Z0-9]+)\.p8")


class PushSender(Protocol):
    async def send(self, device_token: str, alert: str, payload: Optional[dict] = None) -> bool: ...


def sanitize_device_token(device_token: str) -> str:
    return re.sub(r"[^a-fA-F0-9]", "", device_token)


class APNService:
    """Apple Push Notification service client using token-based (.p8) auth."""

    def __init__(self, config: APNConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._signing_key: Optional[str] = None
        self._key_id: Optional[str] = config.key_id
        self._provider_token: Optional[str] = None
        self._provider_token_issued_at = 0.0
        self._configured = self._load_credentials()

    @property
    def host(self) -> str:
        return APN_PRODUCTION_HOST if self.config.production else APN_SANDBOX_HOST

    @property
    def topic(self) -> str:
        if self.config.bundle_id:
            return self.config.bundle_id
        logger.warning("APN_BUNDLE_ID not set. Using default topic: %s", DEFAULT_BUNDLE_ID)
        return DEFAULT_BUNDLE_ID

    @property
    def is_configured(self) -> bool:
        return self._configured

    def _load_credentials(self) -> bool:
        certs_dir = Path(self.config.certs_dir)
        try:
            key_file = next((p for p in sorted(certs_dir.iterdir()) if p.suffix == ".p8"), None)
        except OSError:
            logger.warning("Could not read certs directory: %s", certs_dir)
            return False

        if key_file is None:
            logger.warning("No .p8 Auth Key found in %s", certs_dir)
            return False

        if not self._key_id:
            match = _KEY_FILE.match(key_file.name)
            if match:
                self._key_id = match.group(1)
                logger.info("Inferred APN Key ID from filename: %s", self._key_id)

        if not self._key_id or not self.config.team_id:
            if not self._key_id:
                logger.warning("APN_KEY_ID missing (and could not infer from filename)")
            if not self.config.team_id:
                logger.warning("APN_TEAM_ID is missing")
            return False

        self._signing_key = key_file.read_text(encoding="utf-8")
        logger.info("APN configured with key %s [production=%s]", self._key_id, self.config.production)
        return True

    def provider_token(self) -> str:
        now = time.time()
        if self._provider_token is None or now - self._provider_token_issued_at > PROVIDER_TOKEN_TTL_SECONDS:
            self._provider_token = jwt.encode(
                {"iss": self.config.team_id, "iat": int(now)},
                self._signing_key,
                algorithm="ES256",
                headers={"kid": self._key_id},
            )
            self._provider_token_issued_at = now
        return self._provider_token

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(http2=True, timeout=10)
        return self._client

    async def send(self, device_token: str, alert: str, payload: Optional[dict] = None) -> bool:
        """Sends one alert. Returns False (never raises) when APNs rejects it or is unreachable."""
        if not self._configured:
            logger.error("APN provider not initialized. Cannot send notification.")
            return False

        token = sanitize_device_token(device_token)
        topic = self.topic
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": topic,
            "apns-push-type": "alert",
            "apns-expiration": str(int(time.time()) + NOTIFICATION_EXPIRY_SECONDS),
        }
        body = {"aps": {"alert": alert, "badge": 1, "sound": "ping.aiff"}, **(payload or {})}

        try:
            response = await self._get_client().post(f"{self.host}/3/device/{token}", json=body, headers=headers)
        except httpx.RequestError as e:
            logger.error("Error sending APN (topic: %s): %s", topic, e)
            return False

        if response.status_code != 200:
            logger.error("APN send failed (topic: %s) %s: %s", topic, response.status_code, response.text)
            return False

        logger.info("APN send success (topic: %s) apns-id=%s", topic, response.headers.get("apns-id"))
        return True

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
