# paygate/providers/http.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from paygate.errors import PaymentError
from paygate.providers.base import ErrorKind

logger = logging.getLogger("paygate.http")

_SECRET_HEADERS = ("authorization", "ocp-apim-subscription-key", "x-api-key")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


class HttpClient:
    def __init__(
        self,
        timeout_s: float = 30.0,
        follow_redirects: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        self.timeout_s = float(timeout_s)
        self._client = httpx.Client(
            timeout=self.timeout_s,
            follow_redirects=follow_redirects,
            transport=transport,
        )

    def _timeout(self, timeout: float | None) -> float:
        # never wait longer than the client default
        if timeout is None:
            return self.timeout_s
        return max(0.001, min(float(timeout), self.timeout_s))

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.post(url, headers=headers, json=json_body, timeout=self._timeout(timeout))
        if debug:
            self._debug_dump("POST", url, headers, r)
        return self._wrap(r)

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        timeout: float | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.get(url, headers=headers, timeout=self._timeout(timeout))
        if debug:
            self._debug_dump("GET", url, headers, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], r: httpx.Response) -> None:
        safe_headers = {
            k: ("REDACTED" if k.lower() in _SECRET_HEADERS else v) for k, v in (headers or {}).items()
        }
        logger.debug(
            "http %s %s headers=%s -> status=%s",
            method,
            url.split("?", 1)[0],
            safe_headers,
            r.status_code,
        )


def is_retryable_http(code: int) -> bool:
    # transient / throttling / gateway issues
    return code in (408, 425, 429) or 500 <= code <= 599


def is_auth_failure_http(code: int) -> bool:
    return code in (401, 403)


def failure_kind(code: int) -> ErrorKind:
    if is_auth_failure_http(code):
        return ErrorKind.AUTH_FAILURE
    if is_retryable_http(code):
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.REJECTED_BY_PROVIDER


def deadline_after(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return time.monotonic() + float(timeout)


def time_left(deadline: float | None) -> float | None:
    """
    Seconds until `deadline` (a time.monotonic() instant), None when unbounded.
    Raises PaymentError(timeout) once it has passed.
    """
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise PaymentError(ErrorKind.TIMEOUT, "The payment provider did not respond in time.")
    return left
