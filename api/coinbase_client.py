"""
Coinbase Advanced Trade API client
Market data and account endpoints with request signing, rate limiting and retries

Updates: v0.2.0 - 2026-09-02 - Bearer (JWT) auth takes precedence over HMAC keys.
Updates: v0.2.3 - 2026-09-20 - Cursor pagination for products and accounts.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import random
import time
import urllib.parse
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union

import jwt
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from api.models import Account, Candle, Product
from config import Config, ConfigurationError
from utils.market_data import api_granularity

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.coinbase.com"
MAX_CANDLES_PER_REQUEST = 350
JWT_LIFETIME_SECONDS = 120

_CANDLES_PATH = "/api/v3/brokerage/market/products/{product_id}/candles"
_PRODUCTS_PATH = "/api/v3/brokerage/market/products"
_ACCOUNTS_PATH = "/api/v3/brokerage/accounts"


class CoinbaseAPIError(Exception):
    """Raised when an upstream call fails or its payload cannot be used."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: str = "", retriable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.retriable = retriable


# ----------------------------------------------------------------------
# Rate limiting
# ----------------------------------------------------------------------

class _RateLimiter:
    """Depth-1 leaky bucket: at most one request per ``60 / rpm`` seconds.

    ``rpm <= 0`` disables limiting. Callers block inside ``acquire`` while
    holding the lock, so concurrent callers are serialised.
    """

    def __init__(self, requests_per_minute: Union[int, float],
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.requests_per_minute = requests_per_minute
        self.interval = 60.0 / requests_per_minute if requests_per_minute and requests_per_minute > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._last_request_at: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def acquire(self) -> float:
        """Block until a request may be sent; return the seconds slept."""
        if not self.enabled:
            return 0.0

        with self._lock:
            now = self._clock()
            if self._last_request_at is None:
                self._last_request_at = now
                return 0.0

            elapsed = now - self._last_request_at
            if elapsed < self.interval:
                wait = self.interval - elapsed
                self._sleep(wait)
                self._last_request_at = self._clock()
                return wait

            self._last_request_at = now
            return 0.0


# ----------------------------------------------------------------------
# Authentication schemes
# ----------------------------------------------------------------------

@dataclass(slots=True)
class NoAuth:
    """Public access; adds no headers."""

    def sign(self, method: str, path: str, body: str = "") -> Dict[str, str]:
        return {}


@dataclass(slots=True)
class HmacAuth:
    """Legacy API key scheme signed with HMAC-SHA256 over ``ts + method + path + body``."""

    api_key: str
    api_secret: str
    passphrase: Optional[str] = None
    clock: Callable[[], float] = field(default=time.time, repr=False)

    def _signature(self, timestamp: str, method: str, path: str, body: str) -> str:
        try:
            secret = base64.b64decode(self.api_secret, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(f"Coinbase API secret is not valid base64: {exc}") from exc

        prehash = f"{timestamp}{method.upper()}{path}{body}"
        digest = hmac.new(secret, prehash.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def sign(self, method: str, path: str, body: str = "") -> Dict[str, str]:
        timestamp = str(int(self.clock()))
        headers = {
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": self._signature(timestamp, method, path, body),
            "CB-ACCESS-TIMESTAMP": timestamp,
        }
        if self.passphrase:
            headers["CB-ACCESS-PASSPHRASE"] = self.passphrase
        return headers


class BearerAuth:
    """Cloud API key scheme: a short-lived ES256 JWT minted for every request."""

    __slots__ = ("key_name", "audience", "_private_key", "_clock")

    def __init__(self, key_name: str, private_key_pem: str,
                 audience: str = DEFAULT_BASE_URL,
                 clock: Callable[[], float] = time.time) -> None:
        self.key_name = key_name
        self.audience = audience
        self._clock = clock
        self._private_key = self._load_private_key(private_key_pem)

    @staticmethod
    def _load_private_key(private_key_pem: str) -> ec.EllipticCurvePrivateKey:
        # Keys pasted into env files often carry literal "\n" sequences.
        normalized = private_key_pem.replace("\\n", "\n").strip()
        try:
            key = serialization.load_pem_private_key(normalized.encode(), password=None)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"Invalid EC private key PEM: {exc}") from exc
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ConfigurationError("Coinbase private key must be an EC key")
        return key

    def token(self) -> str:
        now = int(self._clock())
        claims = {
            "iss": self.key_name,
            "sub": self.key_name,
            "aud": self.audience,
            "iat": now,
            "exp": now + JWT_LIFETIME_SECONDS,
        }
        return jwt.encode(claims, self._private_key, algorithm="ES256", headers={"kid": self.key_name})

    def sign(self, method: str, path: str, body: str = "") -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token()}"}


Auth = Union[BearerAuth, HmacAuth, NoAuth]


def auth_from_config(config: Config) -> Auth:
    """Pick the auth scheme from configuration; bearer credentials win over HMAC keys."""
    if config.uses_jwt():
        return BearerAuth(config.api_key_name or "", config.api_private_key or "",
                          audience=config.get_api_url())
    if config.uses_hmac():
        return HmacAuth(config.api_key or "", config.api_secret or "", config.passphrase)
    return NoAuth()


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------

class CoinbaseAPIClient:
    """Coinbase Advanced Trade client with signing, rate limiting and retry."""

    def __init__(self, auth: Optional[Auth] = None,
                 base_url: str = DEFAULT_BASE_URL,
                 requests_per_minute: int = 0,
                 max_retries: int = 3,
                 backoff_ms: int = 500,
                 timeout: int = 30,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.auth: Auth = auth or NoAuth()
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries if max_retries > 0 else 3
        self.backoff_seconds = (backoff_ms if backoff_ms > 0 else 500) / 1000.0
        self.timeout = timeout
        self._sleep = sleep
        self._rate_limiter = _RateLimiter(requests_per_minute, sleep=sleep)
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'candlefill/0.2',
            'Content-Type': 'application/json',
            'Cache-Control': 'no-cache',
        })

    @classmethod
    def from_config(cls, config: Config) -> "CoinbaseAPIClient":
        return cls(
            auth=auth_from_config(config),
            base_url=config.get_api_url(),
            requests_per_minute=config.rpm,
            max_retries=config.get_retry_attempts(),
            backoff_ms=config.backoff_ms,
            timeout=config.get_timeout(),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with up to half a base period of jitter."""
        base = self.backoff_seconds
        return base * (2 ** attempt) + random.uniform(0, base / 2)

    def rate_limit_delay(self) -> float:
        return self._rate_limiter.acquire()

    def _make_request(self, path: str, params: Optional[Dict[str, Any]] = None,
                      method: str = 'GET', body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a request, retrying network errors, 429 and 5xx with backoff.

        Other non-2xx responses fail immediately. After the last attempt the
        final response or error is raised as ``CoinbaseAPIError``.
        """
        url = f"{self.base_url}{path}"
        body_text = json.dumps(body) if body is not None else ""
        method = method.upper()

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            self.rate_limit_delay()
            headers = self.auth.sign(method, path, body_text)

            try:
                if method == 'GET':
                    response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
                else:
                    response = self.session.post(url, params=params, data=body_text, headers=headers,
                                                 timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                if last_attempt:
                    raise CoinbaseAPIError(f"Request failed: {exc}", retriable=True) from exc
                delay = self._backoff_delay(attempt)
                logger.warning("Coinbase %s %s failed (%s); retry %d/%d in %.2fs",
                               method, path, exc, attempt + 1, self.max_retries - 1, delay)
                self._sleep(delay)
                continue

            status = response.status_code
            if status == 429 or status >= 500:
                if last_attempt:
                    raise CoinbaseAPIError(f"Coinbase HTTP {status}: {response.text}",
                                           status_code=status, body=response.text, retriable=True)
                delay = self._backoff_delay(attempt)
                logger.warning("Coinbase %s %s returned %d; retry %d/%d in %.2fs",
                               method, path, status, attempt + 1, self.max_retries - 1, delay)
                self._sleep(delay)
                continue

            if status < 200 or status >= 300:
                raise CoinbaseAPIError(f"Coinbase HTTP {status}: {response.text}",
                                       status_code=status, body=response.text)

            try:
                payload = response.json()
            except ValueError as exc:
                raise CoinbaseAPIError(f"Invalid JSON from {path}: {exc}", status_code=status,
                                       body=response.text) from exc
            if not isinstance(payload, dict):
                raise CoinbaseAPIError(f"Unexpected payload type from {path}: {type(payload).__name__}",
                                       status_code=status)
            return payload

        # max_retries is always >= 1, so the loop returns or raises.
        raise CoinbaseAPIError(f"No attempts made for {path}")

    def _paginate(self, path: str, key: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect ``key`` items across ``has_next``/``cursor`` pages."""
        query = dict(params or {})
        items: List[Dict[str, Any]] = []
        while True:
            payload = self._make_request(path, params=query)
            items.extend(payload.get(key) or [])
            cursor = payload.get("cursor")
            if not payload.get("has_next") or not cursor:
                return items
            query["cursor"] = cursor

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def get_candles(self, product_id: str, start: int, end: int, granularity: str,
                    limit: int = MAX_CANDLES_PER_REQUEST) -> List[Candle]:
        """Fetch one window of candles in ascending time order.

        ``start`` and ``end`` are epoch seconds; the upstream treats ``end``
        as inclusive. At most ``limit`` (capped at 350) candles are returned.
        """
        if limit <= 0 or limit > MAX_CANDLES_PER_REQUEST:
            limit = MAX_CANDLES_PER_REQUEST

        path = _CANDLES_PATH.format(product_id=urllib.parse.quote(product_id, safe=""))
        params = {
            "start": str(int(start)),
            "end": str(int(end)),
            "granularity": api_granularity(granularity),
            "limit": str(limit),
        }
        payload = self._make_request(path, params=params)

        try:
            candles = [Candle.from_api(item) for item in payload.get("candles") or []]
        except (ValueError, TypeError, AttributeError) as exc:
            raise CoinbaseAPIError(f"Malformed candle payload for {product_id}: {exc}") from exc

        # Upstream returns newest first.
        candles.sort(key=lambda candle: candle.time)
        logger.debug("Fetched %d %s candles for %s [%d, %d]", len(candles), granularity, product_id, start, end)
        return candles[:limit]

    def list_products(self, product_type: Optional[str] = None) -> List[Product]:
        params: Dict[str, Any] = {}
        if product_type:
            params["product_type"] = product_type
        return [Product.from_api(item) for item in self._paginate(_PRODUCTS_PATH, "products", params)]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_accounts(self, page_size: int = 250) -> List[Account]:
        """Return every brokerage account, following cursor pagination."""
        items = self._paginate(_ACCOUNTS_PATH, "accounts", {"limit": page_size})
        return [Account.from_api(item) for item in items]
