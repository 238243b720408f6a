"""
Login with Amazon (LWA) access tokens.

- Refresh-token exchange against the LWA token endpoint
- Cached access token with a 60 second expiry margin
- 3 attempts with exponential backoff (1s, 2s) on 429, timeouts and
  connection errors
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import requests
import structlog

from sellerops.config import get_settings
from sellerops.errors import ConfigurationError, RateLimitedError, VendorApiError, VendorUnavailableError
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)

TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class SpApiCredentials:
    """Seller credentials for one SP-API account"""
    client_id: str
    client_secret: str
    refresh_token: str
    marketplace_id: str
    region: str = "na"
    seller_id: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "SpApiCredentials":
        """
        Build credentials from configuration.

        Raises:
            ConfigurationError: If any credential is missing
        """
        sp = get_settings().sp_api
        missing = [
            name for name, value in (
                ("SP_API_CLIENT_ID", sp.client_id),
                ("SP_API_CLIENT_SECRET", sp.client_secret),
                ("SP_API_REFRESH_TOKEN", sp.refresh_token),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing SP-API credentials: {', '.join(missing)}")
        return cls(
            client_id=sp.client_id,
            client_secret=sp.client_secret.get_secret_value(),
            refresh_token=sp.refresh_token.get_secret_value(),
            marketplace_id=sp.marketplace_id,
            region=sp.region,
            seller_id=sp.seller_id,
        )


class LwaAuth:
    """Thread-safe access token cache (calls arrive via ``asyncio.to_thread``)."""

    def __init__(
        self,
        credentials: SpApiCredentials,
        session: Optional[requests.Session] = None,
        token_url: Optional[str] = None,
        timeout: int = 15,
        max_attempts: int = 3,
    ):
        self.credentials = credentials
        self.session = session or requests.Session()
        self.token_url = token_url or get_settings().sp_api.token_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def invalidate(self) -> None:
        """Drop the cached token so the next call performs a fresh exchange."""
        with self._lock:
            self._token = None
            self._expires_at = None

    def get_access_token(self) -> str:
        with self._lock:
            if self._token and self._expires_at and self._expires_at > utcnow():
                return self._token
            self._token, self._expires_at = self._exchange()
            return self._token

    def _exchange(self):
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.credentials.refresh_token,
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        }

        for attempt in range(1, self.max_attempts + 1):
            wait_time = 2 ** (attempt - 1)
            try:
                resp = self.session.post(self.token_url, data=data, timeout=self.timeout)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning("LWA token request failed", attempt=attempt, error=str(e))
                if attempt < self.max_attempts:
                    time.sleep(wait_time)
                    continue
                raise VendorUnavailableError(f"LWA token endpoint unreachable: {e}") from e

            if resp.status_code == 200:
                payload = resp.json()
                expires_in = int(payload.get("expires_in", 3600))
                expires_at = utcnow() + timedelta(seconds=expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
                logger.info("Obtained LWA access token", expires_in=expires_in)
                return payload["access_token"], expires_at

            if resp.status_code == 429:
                logger.warning("LWA token request rate limited", attempt=attempt, wait_seconds=wait_time)
                if attempt < self.max_attempts:
                    time.sleep(wait_time)
                    continue
                raise RateLimitedError("LWA token endpoint rate limited", body=resp.text)

            if resp.status_code in (400, 401):
                # invalid_grant / invalid_client: retrying cannot help
                raise ConfigurationError(f"LWA rejected credentials ({resp.status_code}): {resp.text}")

            logger.error("LWA token request failed", status_code=resp.status_code, body=resp.text)
            raise VendorApiError("LWA token request failed", status_code=resp.status_code, body=resp.text)

        raise VendorUnavailableError(f"Failed to obtain LWA token after {self.max_attempts} attempts")
