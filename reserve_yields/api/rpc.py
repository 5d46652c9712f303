from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Sequence

import requests

from reserve_yields.config import RpcConfig
from reserve_yields.errors import UpstreamError, UpstreamSchemaMismatch, UpstreamTimeout

logger = logging.getLogger(__name__)


class JsonRpcClient:
    def __init__(self, url: str, session: requests.Session | None = None) -> None:
        self.url = url
        self._session = session
        self._local = threading.local()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def call(self, method: str, params: List[Any], timeout_s: float = 10) -> Any:
        body = {"jsonrpc": "2.0", "id": self.next_id(), "method": method, "params": params}
        try:
            response = self.session.post(self.url, json=body, timeout=(timeout_s, timeout_s))
            response.raise_for_status()
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"RPC call timeout after {timeout_s}s", {"url": self.url}) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise UpstreamError(f"RPC HTTP error {status}", {"url": self.url}, status_code=status) from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"RPC request failed: {exc}", {"url": self.url}) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamSchemaMismatch("RPC response is not JSON", {"url": self.url}) from exc
        if not isinstance(payload, dict):
            raise UpstreamSchemaMismatch("RPC response is not an object", {"url": self.url})
        if payload.get("error"):
            raise UpstreamError(f"RPC error: {payload['error']}", {"url": self.url, "method": method})
        if "result" not in payload or payload["result"] is None:
            raise UpstreamSchemaMismatch(f"RPC {method} returned no result", {"url": self.url})
        return payload["result"]

    def block_number(self, timeout_s: float = 10) -> int:
        return int(self.call("eth_blockNumber", [], timeout_s), 16)

    def get_block(self, number: int | str, timeout_s: float = 10) -> Dict[str, int]:
        tag = number if isinstance(number, str) else hex(number)
        block = self.call("eth_getBlockByNumber", [tag, False], timeout_s)
        try:
            return {"number": int(block["number"], 16), "timestamp": int(block["timestamp"], 16)}
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamSchemaMismatch("Malformed block", {"url": self.url}) from exc


class BlockResolver:
    """Map a unix timestamp to the block at or before it via binary search."""

    def __init__(
        self,
        endpoints: Sequence[str],
        config: RpcConfig | None = None,
        client_factory: Callable[[str], JsonRpcClient] = JsonRpcClient,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not endpoints:
            raise ValueError("BlockResolver needs at least one RPC endpoint")
        self.config = config or RpcConfig()
        self.clients = [client_factory(url) for url in endpoints]
        self.clock = clock

    async def resolve_block(self, timestamp: int, timeout_s: float | None = None) -> int:
        timeout_s = timeout_s if timeout_s is not None else self.config.search_timeout_s
        started = self.clock()
        last_error: Exception | None = None
        for client in self.clients:
            try:
                return await self._search(client, int(timestamp), started, timeout_s)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("RPC endpoint failed url=%s error=%s", client.url, exc)
        raise UpstreamError(
            f"All RPC endpoints failed. Last error: {last_error or 'Unknown'}",
            {"timestamp": timestamp, "endpoints": len(self.clients)},
        )

    def _check_deadline(self, started: float, timeout_s: float) -> None:
        if self.clock() - started > timeout_s:
            raise UpstreamTimeout(f"Operation timeout after {timeout_s}s")

    async def _search(self, client: JsonRpcClient, timestamp: int, started: float, timeout_s: float) -> int:
        self._check_deadline(started, timeout_s)
        latest = await asyncio.to_thread(client.get_block, "latest", self.config.request_timeout_s)
        if timestamp > latest["timestamp"]:
            return latest["number"]

        low = 0
        high = latest["number"]
        iterations = 0
        while low <= high and iterations < self.config.max_iterations:
            self._check_deadline(started, timeout_s)
            iterations += 1
            mid = (low + high) // 2
            block = await asyncio.to_thread(client.get_block, mid, self.config.search_request_timeout_s)
            if block["timestamp"] == timestamp:
                return mid
            if block["timestamp"] < timestamp:
                low = mid + 1
            else:
                high = mid - 1
        logger.debug("Block search closed timestamp=%d iterations=%d block=%d", timestamp, iterations, high)
        return max(high, 0)
