from __future__ import annotations

from typing import Any

import requests


class ReserveYieldsError(Exception):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UpstreamError(ReserveYieldsError):
    """Failure talking to the live API, the indexer or an RPC endpoint."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class UpstreamTimeout(UpstreamError):
    pass


class UpstreamSchemaMismatch(UpstreamError):
    pass


class PoolNotFound(UpstreamError):
    def __init__(self, market_key: str, pool_address: str) -> None:
        super().__init__(
            f"Pool entity not found for market {market_key} ({pool_address})",
            {"market_key": market_key, "pool_address": pool_address},
        )
        self.market_key = market_key
        self.pool_address = pool_address


class InsufficientDataForInterpolation(ReserveYieldsError):
    pass


class ReconciliationMismatch(ReserveYieldsError):
    def __init__(self, market_key: str, reasons: list[str], details: dict[str, Any] | None = None) -> None:
        super().__init__(f"Historical source for {market_key} is unreliable: {', '.join(reasons)}", details)
        self.market_key = market_key
        self.reasons = reasons


class PersistenceWriteError(ReserveYieldsError):
    pass


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (UpstreamSchemaMismatch, PoolNotFound)):
        return False
    if isinstance(exc, UpstreamTimeout):
        return True
    if isinstance(exc, UpstreamError):
        status = exc.status_code
        if status is None:
            return True
        return status >= 500 or status == 429
    if isinstance(exc, requests.HTTPError):
        if exc.response is None:
            return True
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError))
