from __future__ import annotations

import pytest

from reserve_yields.api.rpc import BlockResolver
from reserve_yields.config import RpcConfig
from reserve_yields.errors import UpstreamError

GENESIS = 1_600_000_000
BLOCK_TIME = 12


class FakeRpc:
    def __init__(self, url: str, latest: int = 1000, fail: bool = False) -> None:
        self.url = url
        self.latest = latest
        self.fail = fail
        self.calls: list = []

    def get_block(self, number, timeout_s: float = 10) -> dict:
        self.calls.append((number, timeout_s))
        if self.fail:
            raise UpstreamError(f"{self.url} down", status_code=502)
        if number == "latest":
            number = self.latest
        return {"number": number, "timestamp": GENESIS + number * BLOCK_TIME}


def _resolver(*clients: FakeRpc, **kwargs) -> BlockResolver:
    by_url = {client.url: client for client in clients}
    return BlockResolver(list(by_url), client_factory=by_url.__getitem__, **kwargs)


@pytest.mark.asyncio
async def test_future_timestamp_returns_latest() -> None:
    rpc = FakeRpc("a")
    block = await _resolver(rpc).resolve_block(GENESIS + 5000 * BLOCK_TIME)
    assert block == 1000
    assert rpc.calls == [("latest", 10)]


@pytest.mark.asyncio
async def test_exact_and_between_blocks() -> None:
    rpc = FakeRpc("a")
    resolver = _resolver(rpc)
    assert await resolver.resolve_block(GENESIS + 321 * BLOCK_TIME) == 321
    assert await resolver.resolve_block(GENESIS + 500 * BLOCK_TIME + 5) == 500
    assert all(timeout == 5 for number, timeout in rpc.calls if number != "latest")


@pytest.mark.asyncio
async def test_search_is_capped() -> None:
    rpc = FakeRpc("a", latest=2**30)
    block = await _resolver(rpc, config=RpcConfig(max_iterations=20)).resolve_block(GENESIS + 12345 * BLOCK_TIME + 1)
    assert len(rpc.calls) == 21
    assert 0 <= block < 2**30


@pytest.mark.asyncio
async def test_falls_back_to_next_endpoint() -> None:
    down = FakeRpc("down", fail=True)
    up = FakeRpc("up")
    assert await _resolver(down, up).resolve_block(GENESIS + 10 * BLOCK_TIME) == 10
    assert len(down.calls) == 1


@pytest.mark.asyncio
async def test_all_endpoints_failing_raises_last_error() -> None:
    with pytest.raises(UpstreamError) as excinfo:
        await _resolver(FakeRpc("a", fail=True), FakeRpc("b", fail=True)).resolve_block(GENESIS)
    assert str(excinfo.value).startswith("All RPC endpoints failed. Last error:")
    assert "b down" in str(excinfo.value)


@pytest.mark.asyncio
async def test_overall_deadline_applies() -> None:
    ticks = iter(range(0, 1000, 10))
    rpc = FakeRpc("a")
    resolver = _resolver(rpc, clock=lambda: next(ticks))
    with pytest.raises(UpstreamError) as excinfo:
        await resolver.resolve_block(GENESIS + 400 * BLOCK_TIME + 1, timeout_s=25)
    assert "Operation timeout" in str(excinfo.value)
