"""
Selling Partner API HTTP Client

Thin blocking client over ``requests`` bridged into async code with
``asyncio.to_thread``:
- Connection-level retries via urllib3 ``Retry`` on the session adapter
- ``x-amz-access-token`` auth with one transparent refresh on an expired
  access token
- Status codes mapped onto the error taxonomy (429, 425, 5xx, expired
  pagination tokens)
"""

import asyncio
import re
from typing import Any, Dict, Optional

import requests
import structlog
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from sellerops.amazon.auth import LwaAuth, SpApiCredentials
from sellerops.amazon.marketplaces import REGION_HOSTS
from sellerops.config import get_settings
from sellerops.errors import (
    DuplicateReportError,
    RateLimitedError,
    TokenExpiredError,
    VendorApiError,
    VendorServerError,
    VendorUnavailableError,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

DUPLICATE_REPORT_PATTERN = re.compile(r"duplicate of\s*:\s*([a-f0-9-]+)", re.IGNORECASE)
EXPIRED_TOKEN_MARKERS = ("ttl exceeded", "expired")


def build_session(retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """Session retrying connection failures and gateway errors, never 429."""
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset({"GET", "POST"}),
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


def parse_duplicate_report_id(body: str) -> Optional[str]:
    """Extract the in-progress report id from a 425 body (``duplicate of: abc-123``)."""
    match = DUPLICATE_REPORT_PATTERN.search(body or "")
    return match.group(1) if match else None


def _retry_after(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After") if resp.headers else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def raise_for_vendor_status(resp: requests.Response) -> None:
    """
    Translate a non-2xx response into the error taxonomy.

    Raises:
        RateLimitedError: 429
        DuplicateReportError: 425
        TokenExpiredError: 4xx whose body says the token expired
        VendorServerError: 5xx
        VendorApiError: any other non-success status
    """
    status = resp.status_code
    if status < 300:
        return
    body = resp.text or ""

    if status == 429:
        raise RateLimitedError("Vendor rate limit exceeded", retry_after=_retry_after(resp), body=body)
    if status == 425:
        raise DuplicateReportError(
            "Duplicate report request in progress",
            existing_report_id=parse_duplicate_report_id(body),
            body=body,
        )
    if 400 <= status < 500 and any(marker in body.lower() for marker in EXPIRED_TOKEN_MARKERS):
        raise TokenExpiredError(f"Vendor token expired ({status})", status_code=status, body=body)
    if status >= 500:
        raise VendorServerError(f"Vendor server error {status}", status_code=status, body=body)
    raise VendorApiError(f"Vendor request failed with {status}", status_code=status, body=body)


class SpApiClient:
    """
    Authenticated SP-API client for one seller account.

    Example:
        client = SpApiClient(SpApiCredentials.from_settings())
        payload = await client.call("GET", "/reports/2021-06-30/reports/123")
    """

    def __init__(
        self,
        credentials: SpApiCredentials,
        session: Optional[requests.Session] = None,
        auth: Optional[LwaAuth] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.credentials = credentials
        self.session = session or build_session()
        self.auth = auth or LwaAuth(credentials, session=self.session)
        self.endpoint = (endpoint or settings.sp_api.endpoint or REGION_HOSTS[credentials.region]).rstrip("/")
        self.timeout = timeout or settings.sp_api.request_timeout

    @classmethod
    def from_settings(cls) -> "SpApiClient":
        return cls(SpApiCredentials.from_settings())

    @property
    def marketplace_id(self) -> str:
        return self.credentials.marketplace_id

    def _headers(self) -> Dict[str, str]:
        return {
            "x-amz-access-token": self.auth.get_access_token(),
            "content-type": "application/json",
            "accept": "application/json",
        }

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise VendorUnavailableError(f"{method} {url} failed: {e}") from e

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Blocking request returning the decoded JSON body."""
        url = f"{self.endpoint}{path}"
        resp = self._send(method, url, params=params, json=json)

        if resp.status_code == 403 and "expired" in (resp.text or "").lower():
            logger.info("Access token expired, refreshing", path=path)
            self.auth.invalidate()
            resp = self._send(method, url, params=params, json=json)

        if resp.status_code >= 300:
            logger.warning(
                "SP-API request failed",
                method=method,
                path=path,
                status_code=resp.status_code,
                body=(resp.text or "")[:500],
            )
        raise_for_vendor_status(resp)
        if not resp.content:
            return {}
        return resp.json()

    def fetch_bytes(self, url: str) -> bytes:
        """Download a pre-signed document URL (no auth header)."""
        try:
            resp = self.session.get(url, timeout=max(self.timeout, 120))
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise VendorUnavailableError(f"Document download failed: {e}") from e
        raise_for_vendor_status(resp)
        return resp.content

    async def call(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self.request, method, path, params, json)

    async def download(self, url: str) -> bytes:
        return await asyncio.to_thread(self.fetch_bytes, url)
