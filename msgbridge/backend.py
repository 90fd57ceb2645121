from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Settings, settings as default_settings
from .errors import BackendError, error_type_for_status, normalize_backend_error


logger = logging.getLogger("msgbridge.backend")


def auth_headers(
    style: str,
    api_key: Optional[str] = None,
    x_api_key: Optional[str] = None,
    authorization: Optional[str] = None,
) -> Dict[str, str]:
    """Build upstream auth headers according to the configured style.

    Prefers the configured key, else the inbound x-api-key, else the inbound
    bearer token.
    """
    headers: Dict[str, str] = {}
    key = api_key or x_api_key

    def set_x_api_key(val: str) -> None:
        if val:
            headers["x-api-key"] = val

    def set_authorization(val: str) -> None:
        if not val:
            return
        if val.lower().startswith("bearer "):
            headers["Authorization"] = val
        else:
            headers["Authorization"] = f"Bearer {val}"

    if style == "x-api-key":
        if key:
            set_x_api_key(key)
        elif authorization:
            token = authorization.split(" ", 1)[1] if " " in authorization else authorization
            set_x_api_key(token)
    elif style == "authorization":
        if api_key:
            set_authorization(api_key)
        elif authorization:
            set_authorization(authorization)
        elif x_api_key:
            set_authorization(x_api_key)
    else:
        # both (default): include as many as we can
        if key:
            set_x_api_key(key)
            set_authorization(key)
        elif authorization:
            set_authorization(authorization)
    return headers


def _redact(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v) for k, v in headers.items()}


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if data.get("message"):
            return str(data["message"])
    return json.dumps(data, ensure_ascii=False)


def _status_error(resp: httpx.Response) -> BackendError:
    message = _error_message(resp)
    return BackendError(
        message,
        error_type_for_status(resp.status_code),
        status_code=resp.status_code,
        details={"status": resp.status_code},
    )


class BackendClient:
    """OpenAI-compatible chat completions client shared by all requests."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = config or default_settings
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.settings.backend_base_url.rstrip('/')}/v1/chat/completions"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            limits = httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
                keepalive_expiry=30.0,
            )
            try:
                self._client = httpx.AsyncClient(http2=self.settings.http2, limits=limits)
            except ImportError:
                # h2 extra not installed: fall back to HTTP/1.1
                self._client = httpx.AsyncClient(http2=False, limits=limits)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def headers(self, x_api_key: Optional[str] = None, authorization: Optional[str] = None) -> Dict[str, str]:
        return auth_headers(self.settings.backend_auth_style, self.settings.backend_api_key, x_api_key, authorization)

    def _retry_delay(self, resp: httpx.Response, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying a 429, or None when no retry should happen."""
        if resp.status_code != 429 or not self.settings.backoff_on_429:
            return None
        if attempt >= self.settings.max_retry_on_429:
            return None
        try:
            ra = float(resp.headers.get("Retry-After", "0"))
        except ValueError:
            ra = 0.0
        if 0.0 < ra <= self.settings.max_retry_after_seconds:
            return ra
        return None

    async def create(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """POST a non-streaming completion and return the decoded body."""
        client = self._get_client()
        headers = headers or self.headers()
        logger.debug("upstream request (non-stream): %s", json.dumps({"url": self.url, "headers": _redact(headers)}))
        attempt = 0
        while True:
            try:
                resp = await client.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=httpx.Timeout(self.settings.request_timeout),
                )
            except httpx.HTTPError as e:
                err = normalize_backend_error(e)
                raise BackendError(err.message, err.type) from e
            delay = self._retry_delay(resp, attempt)
            if delay is None:
                break
            logger.info("Backend returned 429; retrying in %.2fs", delay)
            await asyncio.sleep(delay)
            attempt += 1

        if resp.status_code >= 400:
            raise _status_error(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise BackendError("Backend returned a non-JSON body", status_code=resp.status_code) from e

    @asynccontextmanager
    async def stream(
        self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streaming completion; yields the backend's SSE line iterator.

        Status errors are raised before the first line so the caller can still
        answer with a plain error document.
        """
        client = self._get_client()
        headers = {**(headers or self.headers()), "Accept": "text/event-stream"}
        body = {**payload, "stream": True}
        logger.debug("upstream request (stream): %s", json.dumps({"url": self.url, "headers": _redact(headers)}))
        attempt = 0
        while True:
            try:
                async with client.stream(
                    "POST",
                    self.url,
                    json=body,
                    headers=headers,
                    timeout=httpx.Timeout(self.settings.request_timeout),
                ) as upstream:
                    if upstream.status_code >= 400:
                        await upstream.aread()
                        delay = self._retry_delay(upstream, attempt)
                        if delay is None:
                            raise _status_error(upstream)
                    else:
                        yield upstream.aiter_lines()
                        return
            except httpx.HTTPError as e:
                err = normalize_backend_error(e)
                raise BackendError(err.message, err.type) from e
            logger.info("Backend returned 429; retrying in %.2fs", delay)
            await asyncio.sleep(delay)
            attempt += 1
