"""Sudreg (Croatian court register) open-data API client.

Two pieces:

- ``TokenCache``: OAuth2 client-credentials bearer token, cached per process
  and refreshed once it is within 30 seconds of expiry.
- ``SudregClient``: authenticated, rate-limited GET wrapper plus the envelope
  helpers ``extract_list`` / ``extract_detail`` that hide the API's
  inconsistent response shapes from the rest of the code.

There is no retry/backoff here: a failed call raises, and the
caller decides whether that degrades a single record or ends the sync run.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

import requests

from logging_utils import get_logger
from settings import SETTINGS
from utils.time_utils import epoch_ms

logger = get_logger(__name__)


# Refresh the token when it expires within this many milliseconds.
TOKEN_SAFETY_MARGIN_MS = 30_000
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Container keys tried (in order) when a listing endpoint wraps its array.
LIST_CONTAINER_KEYS: tuple[str, ...] = ("items", "results", "content", "rezultati", "data")

# Wrapper keys tried (in order) when a detail endpoint nests the subject record.
DETAIL_CONTAINER_KEYS: tuple[str, ...] = ("subjekt", "detalji", "data", "result", "item")

COMPANIES_ENDPOINT = "/subjekti"
NKD_ENDPOINT = "/nacionalna_klasifikacija_djelatnosti"
DETAIL_ENDPOINT = "/detalji_subjekta"


class SudregApiError(RuntimeError):
    pass


class ConfigurationError(SudregApiError):
    """Client id/secret (or another required setting) is missing."""


class UpstreamAuthError(SudregApiError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpstreamRequestError(SudregApiError):
    def __init__(self, message: str, *, status: int | None, endpoint: str) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at_ms: int


def _setting_str(name: str) -> str:
    v = SETTINGS.get(name)
    return v.strip() if isinstance(v, str) else ""


_MISSING_CREDENTIALS = (
    "Sudreg client credentials are not configured "
    "(set SUDREG_CLIENT_ID and SUDREG_CLIENT_SECRET)"
)


def require_credentials() -> None:
    """Raise ConfigurationError unless the settings carry a client id and secret."""

    if not _setting_str("SUDREG_CLIENT_ID") or not _setting_str("SUDREG_CLIENT_SECRET"):
        raise ConfigurationError(_MISSING_CREDENTIALS)


def _safe_preview(text: str | None, *, limit: int = 500) -> str:
    """Log-safe, truncated preview of a response body."""

    if not text:
        return ""
    return text[:limit]


class TokenCache:
    """Process-local bearer token cache for the Sudreg API.

    No lock: the sync job is single-flight, and a concurrent refresh from a
    detail request only costs one extra token round trip.
    """

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
        session: requests.Session | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._session = session
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._credential: Credential | None = None

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def invalidate(self) -> None:
        self._credential = None

    def _resolved(self) -> tuple[str, str, str]:
        client_id = self._client_id if self._client_id is not None else _setting_str("SUDREG_CLIENT_ID")
        client_secret = (
            self._client_secret
            if self._client_secret is not None
            else _setting_str("SUDREG_CLIENT_SECRET")
        )
        token_url = self._token_url or _setting_str("SUDREG_TOKEN_URL")
        return client_id, client_secret, token_url

    def get_token(self) -> str:
        cached = self._credential
        now = self._clock()
        if cached is not None and cached.expires_at_ms - now > TOKEN_SAFETY_MARGIN_MS:
            return cached.token

        client_id, client_secret, token_url = self._resolved()
        if not client_id or not client_secret:
            raise ConfigurationError(_MISSING_CREDENTIALS)
        if not token_url:
            raise ConfigurationError("SUDREG_TOKEN_URL is not configured")

        s = self._session or requests.Session()
        timeout = self._timeout_seconds or float(SETTINGS.get("SUDREG_TIMEOUT_SECONDS") or 30.0)
        try:
            resp = s.post(
                token_url,
                data={"grant_type": "client_credentials"},
                auth=(client_id, client_secret),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise UpstreamAuthError(f"Sudreg token request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            logger.warning(
                "Sudreg token endpoint non-2xx | status=%s url=%s body_preview=%s",
                resp.status_code,
                token_url,
                _safe_preview(getattr(resp, "text", "")),
            )
            raise UpstreamAuthError(
                f"Sudreg token request failed status={resp.status_code}",
                status=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamAuthError(
                "Sudreg token response is not JSON", status=resp.status_code
            ) from e

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise UpstreamAuthError(
                "Sudreg token response has no access_token", status=resp.status_code
            )

        raw_expires_in = payload.get("expires_in")
        try:
            expires_in = (
                DEFAULT_TOKEN_TTL_SECONDS if raw_expires_in is None else int(raw_expires_in)
            )
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_SECONDS

        self._credential = Credential(
            token=str(token), expires_at_ms=self._clock() + expires_in * 1000
        )
        logger.info("Sudreg token refreshed | expires_in=%ss", expires_in)
        return self._credential.token


class RequestRateLimiter:
    """Caps outgoing Sudreg calls at ``per_second`` in any rolling second.

    One instance is shared by every client built from settings. ``clock``
    and ``sleep`` are injectable for tests.
    """

    def __init__(
        self,
        per_second: int = 5,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if int(per_second) <= 0:
            raise ValueError("per_second must be > 0")

        self.per_second = int(per_second)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._sent: deque[float] = deque()

    def _reserve(self) -> float:
        """Claim a slot now, or return how long to wait for one."""

        now = self._clock()
        with self._lock:
            while self._sent and now - self._sent[0] >= 1.0:
                self._sent.popleft()
            if len(self._sent) < self.per_second:
                self._sent.append(now)
                return 0.0
            return max(self._sent[0] + 1.0 - now, 0.001)

    def acquire(self) -> None:
        """Block until a request slot is free."""

        wait = self._reserve()
        while wait > 0:
            logger.debug("Sudreg rate limit reached; waiting %.3fs", wait)
            self._sleep(wait)
            wait = self._reserve()


def extract_list(payload: Any) -> list:
    """Return the record array of a listing response, or ``[]``.

    Accepts a bare array or an object carrying the array under one of
    ``LIST_CONTAINER_KEYS``; a ``data`` object is searched one level deeper.
    """

    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []

    for key in LIST_CONTAINER_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return value

    nested = payload.get("data")
    if isinstance(nested, dict):
        for key in LIST_CONTAINER_KEYS:
            value = nested.get(key)
            if isinstance(value, list):
                return value

    return []


def extract_detail(payload: Any) -> Any:
    """Unwrap a detail response to the subject record itself."""

    if not isinstance(payload, dict):
        return payload
    for key in DETAIL_CONTAINER_KEYS:
        value = payload.get(key)
        if isinstance(value, dict):
            return value
    return payload


class SudregClient:
    """Authenticated GET wrapper around the Sudreg public API."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        tokens: TokenCache | None = None,
        session: requests.Session | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.base_url = (base_url or _setting_str("SUDREG_API_BASE_URL")).rstrip("/")
        self.tokens = tokens or default_token_cache()
        self._session = session or requests.Session()
        self._rate_limiter = rate_limiter or _default_rate_limiter()
        self._timeout_seconds = timeout_seconds or float(
            SETTINGS.get("SUDREG_TIMEOUT_SECONDS") or 30.0
        )

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def fetch_json(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``endpoint`` and return the decoded JSON body.

        Raises ``UpstreamRequestError`` on transport failures and non-2xx
        responses. A 2xx body that is not JSON decodes to ``None``.
        """

        token = self.tokens.get_token()
        url = self._url(endpoint)

        self._rate_limiter.acquire()
        try:
            resp = self._session.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("Sudreg request failed | endpoint=%s err=%s", endpoint, e)
            raise UpstreamRequestError(
                f"Sudreg request failed endpoint={endpoint}: {e}",
                status=None,
                endpoint=endpoint,
            ) from e

        if not 200 <= resp.status_code < 300:
            logger.warning(
                "Sudreg non-2xx response | status=%s endpoint=%s params=%s body_preview=%s",
                resp.status_code,
                endpoint,
                params,
                _safe_preview(getattr(resp, "text", "")),
            )
            if resp.status_code == 401:
                # Token revoked or rotated upstream; next call fetches a new one.
                self.tokens.invalidate()
            raise UpstreamRequestError(
                f"Sudreg request failed status={resp.status_code} endpoint={endpoint}",
                status=resp.status_code,
                endpoint=endpoint,
            )

        try:
            return resp.json()
        except ValueError:
            logger.warning("Sudreg response is not JSON | endpoint=%s", endpoint)
            return None

    def list_companies(self, *, offset: int, limit: int) -> list:
        payload = self.fetch_json(
            COMPANIES_ENDPOINT, params={"offset": int(offset), "limit": int(limit)}
        )
        return extract_list(payload)

    def list_nkd(self) -> list:
        return extract_list(self.fetch_json(NKD_ENDPOINT))

    def company_detail(self, mbs: str) -> Any:
        payload = self.fetch_json(
            DETAIL_ENDPOINT,
            params={
                "tip_identifikatora": "mbs",
                "identifikator": str(mbs),
                "expand_relations": "true",
            },
        )
        return extract_detail(payload)


_token_cache: TokenCache | None = None
_rate_limiter: RequestRateLimiter | None = None


def default_token_cache() -> TokenCache:
    """The process-wide token cache shared by every client built from settings."""

    global _token_cache
    if _token_cache is None:
        _token_cache = TokenCache()
    return _token_cache


def _default_rate_limiter() -> RequestRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        rps = int(SETTINGS.get("SUDREG_MAX_REQUESTS_PER_SECOND") or 5)
        _rate_limiter = RequestRateLimiter(max(1, rps))
    return _rate_limiter
