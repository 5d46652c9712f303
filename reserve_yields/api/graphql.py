from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

import requests

from reserve_yields.errors import UpstreamError, UpstreamSchemaMismatch, UpstreamTimeout

logger = logging.getLogger(__name__)


class GraphQLClient:
    def __init__(self, url: str, timeout_s: float = 15, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = (timeout_s, timeout_s)
        self.request_count = 0
        self._session = session
        self._local = threading.local()
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        # one session per worker thread
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def post(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            self.request_count += 1
        body = {"query": query, "variables": variables or {}}
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"GraphQL request timed out: {self.url}", {"url": self.url}) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise UpstreamError(
                f"GraphQL HTTP error {status}: {self.url}",
                {"url": self.url},
                status_code=status,
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"GraphQL request failed: {exc}", {"url": self.url}) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamSchemaMismatch("GraphQL response is not JSON", {"url": self.url}) from exc
        if not isinstance(payload, dict):
            raise UpstreamSchemaMismatch("GraphQL response is not an object", {"url": self.url})
        errors = payload.get("errors")
        if errors:
            messages = [str(item.get("message", item)) if isinstance(item, dict) else str(item) for item in errors]
            raise UpstreamError(
                f"GraphQL errors: {'; '.join(messages)}",
                {"url": self.url, "errors": messages},
                status_code=response.status_code,
            )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise UpstreamSchemaMismatch("GraphQL response has no data", {"url": self.url})
        return data

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        return await asyncio.to_thread(self.post, query, variables)
