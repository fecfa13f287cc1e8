import asyncio

import pytest

from bewerbungstrainer.orchestrator.schemas import ConnectionMode, TransportKind
from bewerbungstrainer.transport.connectivity import ConnectivityProbe, ProbeCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeSocket:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeClose(Exception):
    def __init__(self, code: int) -> None:
        super().__init__(f"closed with {code}")
        self.code = code


class FakeConnector:
    def __init__(self, error: Exception | None = None, hang: bool = False) -> None:
        self.error = error
        self.hang = hang
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str, **kwargs) -> FakeSocket:  # noqa: ANN003
        self.urls.append(url)
        if self.hang:
            await asyncio.sleep(10)
        if self.error is not None:
            raise self.error
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws


def _probe(connector: FakeConnector, clock: FakeClock | None = None, **kwargs) -> ConnectivityProbe:  # noqa: ANN003
    return ConnectivityProbe(
        connector=connector,
        clock=clock or FakeClock(),
        ttl=300,
        endpoint="wss://agents.example/v1/convai/conversation",
        proxy_url=kwargs.pop("proxy_url", "wss://relay.example/ws"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_successful_probe_closes_socket() -> None:
    connector = FakeConnector()
    probe = _probe(connector)

    result = await probe.test("agent 1")

    assert result.success is True
    assert result.latency_ms == 0
    assert result.cached is False
    assert connector.urls == ["wss://agents.example/v1/convai/conversation?agent_id=agent%201"]
    assert connector.sockets[0].closed is True


@pytest.mark.asyncio
async def test_cached_result_is_served_without_new_socket() -> None:
    clock = FakeClock()
    connector = FakeConnector()
    probe = _probe(connector, clock)

    await probe.test("a1")
    clock.now += 299
    second = await probe.test("a1")

    assert second.success is True
    assert second.cached is True
    assert second.cached_at is not None
    assert probe.probes_performed == 1
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_expired_result_triggers_new_probe() -> None:
    clock = FakeClock()
    connector = FakeConnector()
    probe = _probe(connector, clock)

    await probe.test("a1")
    clock.now += 300
    again = await probe.test("a1")

    assert again.cached is False
    assert probe.probes_performed == 2


@pytest.mark.asyncio
async def test_force_and_invalidate_bypass_cache() -> None:
    connector = FakeConnector()
    probe = _probe(connector)

    await probe.test("a1")
    await probe.test("a1", force=True)
    probe.invalidate("a1")
    await probe.test("a1")

    assert probe.probes_performed == 3


@pytest.mark.asyncio
async def test_cache_is_per_agent() -> None:
    connector = FakeConnector()
    probe = _probe(connector)

    await probe.test("a1")
    await probe.test("a2")

    assert probe.probes_performed == 2
    assert len(probe.cache) == 2


@pytest.mark.asyncio
async def test_missing_agent_id_does_not_probe() -> None:
    connector = FakeConnector()
    probe = _probe(connector)

    result = await probe.test("")

    assert result.success is False
    assert result.error == "No agent ID provided"
    assert connector.urls == []


@pytest.mark.asyncio
async def test_timeout_is_reported() -> None:
    probe = _probe(FakeConnector(hang=True))

    result = await probe.test("a1", timeout_ms=20)

    assert result.success is False
    assert result.error == "Connection timeout"


@pytest.mark.asyncio
async def test_normal_closure_counts_as_success() -> None:
    probe = _probe(FakeConnector(error=FakeClose(1000)))

    result = await probe.test("a1")

    assert result.success is True


@pytest.mark.asyncio
async def test_abnormal_closure_is_failure() -> None:
    probe = _probe(FakeConnector(error=FakeClose(1006)))

    result = await probe.test("a1")

    assert result.success is False
    assert result.error == "Connection closed: 1006"


@pytest.mark.asyncio
async def test_failed_probe_selects_http_turns() -> None:
    probe = _probe(FakeConnector(error=OSError("blocked by proxy")))

    assert await probe.detect_best_connection_mode("a1") == ConnectionMode.CORPORATE
    assert await probe.select_transport("a1") == TransportKind.HTTP


@pytest.mark.asyncio
async def test_missing_websocket_support_selects_corporate_without_probe() -> None:
    connector = FakeConnector()
    probe = _probe(connector, websocket_supported=lambda: False)

    assert await probe.detect_best_connection_mode("a1") == ConnectionMode.CORPORATE
    assert connector.urls == []


@pytest.mark.asyncio
async def test_reachable_endpoint_selects_native_or_proxy() -> None:
    probe = _probe(FakeConnector())

    assert await probe.select_transport("a1") == TransportKind.NATIVE
    assert await probe.select_transport("a1", prefer_proxy=True) == TransportKind.PROXY


@pytest.mark.asyncio
async def test_proxy_probe_is_not_cached() -> None:
    connector = FakeConnector()
    probe = _probe(connector)

    await probe.test_proxy()
    await probe.test_proxy()

    assert connector.urls == ["wss://relay.example/ws", "wss://relay.example/ws"]
    assert len(probe.cache) == 0


def test_probe_cache_invalidate_all() -> None:
    clock = FakeClock()
    cache = ProbeCache(ttl=10, clock=clock)
    probe = _probe(FakeConnector())
    result = asyncio.run(probe.test("a1"))

    cache.put("a1", result)
    cache.put("a2", result)
    assert cache.get("a1") is not None

    cache.invalidate()
    assert len(cache) == 0
    assert cache.get("a2") is None
