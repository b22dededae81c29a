# src/outbox/tasks/http_handler.py

from __future__ import annotations

"""
`http_request` task kind: the remote phase is one HTTP call made with httpx.

Payload:
    {"method": "POST", "url": "https://...", "json": {...}, "headers": {...}, "params": {...}}

Classification:
- transport errors, 408/425/429 and 5xx -> RemoteTransientError (retried)
- any other 4xx -> RemotePermanentError (rolled back, failed)
"""

import logging
from typing import Any

import httpx

from .task_errors import RemotePermanentError, RemoteTransientError
from .task_handlers import BaseTaskHandler
from .task_models import TaskRecord

logger = logging.getLogger(__name__)

HTTP_REQUEST_KIND = "http_request"

_ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
_RETRYABLE_STATUS = {408, 425, 429}


def _is_retryable_status(code: int) -> bool:
    return code in _RETRYABLE_STATUS or code >= 500


def _request_args(payload: dict[str, Any]) -> dict[str, Any]:
    method = str(payload.get("method") or "POST").upper()
    url = payload.get("url")
    if method not in _ALLOWED_METHODS:
        raise ValueError(f"unsupported method {method!r}")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ValueError(f"url must be an absolute http(s) URL, got {url!r}")

    args: dict[str, Any] = {"method": method, "url": url}
    for key in ("json", "headers", "params"):
        if payload.get(key) is not None:
            args[key] = payload[key]
    return args


class HttpRequestHandler(BaseTaskHandler):
    def __init__(self, client: httpx.AsyncClient | None = None, *, timeout_seconds: float = 20.0) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(timeout_seconds)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def perform_local(self, record: TaskRecord) -> None:
        # Nothing to apply locally; reject bad payloads before they reach the network.
        _request_args(record.payload)

    async def perform_remote(self, record: TaskRecord) -> None:
        args = _request_args(record.payload)
        resp = await self._get_client().request(**args)

        if resp.is_success or resp.is_redirect:
            logger.debug("http_request %s -> %s", record.id, resp.status_code)
            return

        detail = f"{args['method']} {args['url']} -> HTTP {resp.status_code}"
        if _is_retryable_status(resp.status_code):
            raise RemoteTransientError(detail)
        raise RemotePermanentError(detail)

    def rollback(self, record: TaskRecord) -> None:
        logger.info("http_request %s rolled back (no local effects)", record.id)
