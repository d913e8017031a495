"""IGDB client and Twitch credential helpers."""

from __future__ import annotations

import json
import logging
import os
import time
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from catalog_sync.errors import AuthError, TransportError
from igdb.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


__all__ = [
    "AUTH_FAILURE_STATUSES",
    "IGDBClient",
    "TokenSource",
    "TwitchTokenSource",
]


AUTH_FAILURE_STATUSES = frozenset({401, 403})

# Tokens are treated as expired this many seconds before Twitch says so.
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60


class TokenSource(Protocol):
    def get_token(self) -> str:
        ...


class TwitchTokenSource:
    """Exchange client credentials for an app access token and cache it."""

    TOKEN_URL = "https://id.twitch.tv/oauth2/token"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        *,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[[Any], Any] | None = None,
        clock: Callable[[], float] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._client_id = (
            client_id or self._env.get("IGDB_CLIENT_ID") or self._env.get("TWITCH_CLIENT_ID") or ""
        ).strip()
        self._client_secret = (
            client_secret
            or self._env.get("IGDB_CLIENT_SECRET")
            or self._env.get("TWITCH_CLIENT_SECRET")
            or ""
        ).strip()
        self._request_factory = request_factory or Request
        self._opener = opener or urlopen
        self._clock = clock or time.time
        self._lock = Lock()
        self._token: str | None = None
        self._expires_at: float = 0.0

    @property
    def client_id(self) -> str:
        return self._client_id

    def get_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token
            logger.info("Requesting a new IGDB access token")
            token, expires_in = self._exchange()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_BUFFER_SECONDS, 0)
            logger.info("IGDB access token acquired; valid for %s seconds", expires_in)
            return token

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0
        logger.info("IGDB access token cleared")

    def token_info(self) -> dict[str, Any]:
        with self._lock:
            if not self._token:
                return {"has_token": False}
            remaining = max(0, int(self._expires_at - self._clock()))
            return {"has_token": True, "expires_at": self._expires_at, "expires_in": remaining}

    def _exchange(self) -> tuple[str, int]:
        if not self._client_id or not self._client_secret:
            raise AuthError(None, "", "missing twitch client credentials")

        payload = urlencode(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
            }
        ).encode("utf-8")
        request = self._request_factory(self.TOKEN_URL, data=payload, method="POST")
        request.add_header("Content-Type", "application/x-www-form-urlencoded")

        try:
            with self._opener(request) as response:
                body = response.read()
        except HTTPError as exc:
            raise AuthError(exc.code, _read_error_body(exc), None) from exc
        except (URLError, OSError) as exc:
            raise TransportError(None, str(exc), f"failed to obtain twitch token: {exc}") from exc

        try:
            data = json.loads(body.decode("utf-8") if body else "{}")
        except ValueError as exc:
            raise TransportError(200, "", "invalid JSON response from twitch") from exc

        token = data.get("access_token") if isinstance(data, Mapping) else None
        if not token:
            raise AuthError(None, "", "missing access token in twitch response")
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return str(token), expires_in


class IGDBClient:
    """Issue rate limited, authenticated page requests against IGDB."""

    BASE_URL = "https://api.igdb.com/v4"
    DEFAULT_USER_AGENT = "IGDB-Catalog-Sync/1.0"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        token_source: TokenSource | Callable[[], str] | None = None,
        rate_limiter: RateLimiter | None = None,
        user_agent: str | None = None,
        base_url: str | None = None,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[[Any], Any] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._client_id = (client_id or self._env.get("IGDB_CLIENT_ID") or "").strip()
        self._token_source = token_source
        self._rate_limiter = rate_limiter or RateLimiter.per_second()
        self._user_agent = (user_agent or "").strip()
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._request_factory = request_factory or Request
        self._opener = opener or urlopen

    @property
    def user_agent(self) -> str:
        if self._user_agent:
            return self._user_agent
        env_agent = self._env.get("IGDB_USER_AGENT")
        if env_agent:
            return env_agent.strip()
        return self.DEFAULT_USER_AGENT

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def fetch_page(self, endpoint: str, query: str) -> list[dict[str, Any]]:
        """POST ``query`` to ``endpoint`` and return the decoded JSON array.

        An empty list is a valid page. Non-success statuses raise
        :class:`TransportError`, rejected tokens raise :class:`AuthError`.
        Elements are returned as sent, non-object ones included, so the page
        length matches what IGDB answered.
        """

        payload = self._post(endpoint, query)
        if not isinstance(payload, list):
            raise TransportError(200, _truncate(json.dumps(payload)), "IGDB response is not a JSON array")
        return list(payload)

    def fetch_count(self, endpoint: str, where: str | None = None) -> int:
        """Return the record count reported by ``<endpoint>/count``."""

        query = f"where {where.strip().rstrip(';')};" if where else ""
        payload = self._post(f"{endpoint.strip('/')}/count", query)
        if isinstance(payload, Mapping):
            count_value = payload.get("count")
        elif isinstance(payload, list) and payload and isinstance(payload[0], Mapping):
            count_value = payload[0].get("count")
        else:
            count_value = None
        try:
            return int(count_value)
        except (TypeError, ValueError):
            raise TransportError(200, _truncate(str(payload)), "invalid count payload from IGDB")

    def _token(self) -> str:
        source = self._token_source
        if source is None:
            raise AuthError(None, "", "no IGDB token source configured")
        get_token = getattr(source, "get_token", None)
        token = get_token() if callable(get_token) else source()
        token = (token or "").strip()
        if not token:
            raise AuthError(None, "", "missing IGDB access token")
        return token

    def _post(self, endpoint: str, query: str) -> Any:
        url = f"{self._base_url}/{endpoint.strip('/')}"
        self._rate_limiter.wait()
        token = self._token()

        request = self._request_factory(url, data=query.encode("utf-8"), method="POST")
        self._apply_headers(request, token)
        logger.debug("POST %s %s", url, query)

        try:
            with self._opener(request) as response:
                status = getattr(response, "status", None) or 200
                body = response.read()
        except HTTPError as exc:
            error_body = _read_error_body(exc)
            if exc.code in AUTH_FAILURE_STATUSES:
                raise AuthError(exc.code, error_body) from exc
            raise TransportError(exc.code, error_body) from exc
        except (URLError, OSError) as exc:
            raise TransportError(None, str(exc), f"failed to query IGDB: {exc}") from exc

        text = body.decode("utf-8", errors="replace") if body else ""
        if not 200 <= int(status) < 300:
            if int(status) in AUTH_FAILURE_STATUSES:
                raise AuthError(int(status), _truncate(text))
            raise TransportError(int(status), _truncate(text))
        if not text.strip():
            return []
        try:
            return json.loads(text)
        except ValueError as exc:
            raise TransportError(int(status), _truncate(text), "invalid JSON response from IGDB") from exc

    def _apply_headers(self, request: Any, access_token: str) -> None:
        request.add_header("Client-ID", self._client_id)
        request.add_header("Authorization", f"Bearer {access_token}")
        request.add_header("Content-Type", "text/plain")
        request.add_header("Accept", "application/json")
        request.add_header("User-Agent", self.user_agent)


def _truncate(text: str, limit: int = 2_000) -> str:
    return text if len(text) <= limit else f"{text[:limit]}…"


def _read_error_body(error: HTTPError) -> str:
    try:
        error_body = error.read()
    except Exception:  # pragma: no cover - best effort to capture error body
        error_body = b""
    message = ""
    if error_body:
        message = error_body.decode("utf-8", errors="replace").strip()
    if not message and error.reason:
        message = str(error.reason)
    return _truncate(message)
