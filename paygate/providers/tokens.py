from __future__ import annotations

import base64
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from paygate.errors import PaymentError
from paygate.providers.base import ErrorKind, Provider
from paygate.providers.http import HttpClient
from paygate.services.metrics import increment_token_refresh

logger = logging.getLogger("paygate.tokens")


@dataclass(frozen=True)
class Token:
    value: str
    expires_at: float  # epoch seconds, as reported by the provider

    def is_fresh(self, now: float, margin_s: float) -> bool:
        return now < self.expires_at - margin_s


Exchange = Callable[[Optional[float]], Token]


class TokenManager:
    """
    Cached bearer token for one provider.

    A fresh token is returned without locking or network. When the cache is
    empty or inside the safety margin, exactly one caller (the leader) runs
    the credential exchange; everyone arriving meanwhile waits on the same
    Future and gets the same token or the same PaymentError. Failures are
    not cached, the next call starts a new exchange.
    """

    def __init__(
        self,
        provider: Provider,
        exchange: Exchange,
        *,
        safety_margin_s: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.safety_margin_s = float(safety_margin_s)
        self._exchange = exchange
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[Token] = None
        self._inflight: Optional[Future] = None

    def peek(self) -> Optional[Token]:
        return self._token

    def _fresh(self) -> Optional[Token]:
        tok = self._token
        if tok is not None and tok.is_fresh(self._clock(), self.safety_margin_s):
            return tok
        return None

    def get_token(self, timeout: float | None = None) -> Token:
        tok = self._fresh()
        if tok is not None:
            return tok

        with self._lock:
            tok = self._fresh()
            if tok is not None:
                return tok
            leader = self._inflight is None
            if leader:
                self._inflight = Future()
            fut = self._inflight

        if not leader:
            try:
                return fut.result(timeout=timeout)
            except FutureTimeout:
                # the leader keeps going; its result still lands in the cache
                raise PaymentError(
                    ErrorKind.TIMEOUT,
                    f"Timed out waiting for {self.provider.value} access token.",
                ) from None

        try:
            token = self._exchange(timeout)
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            fut.set_exception(exc)
            increment_token_refresh(self.provider.value, "failure")
            logger.warning("token refresh failed provider=%s error=%s", self.provider.value, exc)
            raise

        with self._lock:
            self._token = token
            self._inflight = None
        fut.set_result(token)
        increment_token_refresh(self.provider.value, "success")
        logger.info(
            "token refreshed provider=%s expires_in_s=%s",
            self.provider.value,
            int(token.expires_at - self._clock()),
        )
        return token

    def invalidate(self, token: Token | None = None) -> None:
        """
        Drop the cached token. With `token`, only drop it if it is still the
        cached one, so a stale 401 cannot evict a newer token.
        """
        with self._lock:
            if token is None or self._token == token:
                self._token = None


def basic_auth(user: str, secret: str) -> str:
    raw = f"{user}:{secret}".encode()
    return "Basic " + base64.b64encode(raw).decode()


def exchange_client_credentials(
    http: HttpClient,
    provider: Provider,
    method: str,
    url: str,
    headers: dict[str, str],
    *,
    timeout: float | None = None,
    default_ttl_s: int = 3600,
    clock: Callable[[], float] = time.time,
) -> Token:
    """
    Run one client-credentials exchange and return the Token.

    Raises PaymentError(timeout) when the call times out and
    PaymentError(auth_failure) for anything else.
    """
    now = clock()
    try:
        if method.upper() == "GET":
            resp = http.get(url, headers=headers, timeout=timeout)
        else:
            resp = http.post(url, headers=headers, json_body=None, timeout=timeout)
    except httpx.TimeoutException as e:
        raise PaymentError(
            ErrorKind.TIMEOUT,
            f"{provider.value} token request timed out.",
        ) from e
    except httpx.HTTPError as e:
        raise PaymentError(
            ErrorKind.AUTH_FAILURE,
            f"{provider.value} token request failed: {type(e).__name__}",
        ) from e

    body = resp.json or {}
    access_token = body.get("access_token")
    if resp.status_code != 200 or not access_token:
        raise PaymentError(
            ErrorKind.AUTH_FAILURE,
            f"{provider.value} rejected the credential exchange.",
            native_code=str(body.get("errorCode") or body.get("error") or resp.status_code),
            native_message=str(body.get("errorMessage") or body.get("message") or resp.text[:200]),
            http_status=resp.status_code,
        )

    try:
        ttl = int(body.get("expires_in") or default_ttl_s)
    except (TypeError, ValueError):
        ttl = default_ttl_s

    return Token(value=str(access_token), expires_at=now + ttl)
