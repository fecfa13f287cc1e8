"""
WebSocket reachability probe.

Opens a throwaway connection to the conversational endpoint to decide
between the WebSocket transports and the HTTP turn fallback. Results are
cached per agent so repeated session starts do not probe again.
"""

import asyncio
import importlib.util
import logging
import time
from typing import Any, Callable
from urllib.parse import quote

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.orchestrator.schemas import ConnectionMode, ConnectivityResult, TransportKind, _now_utc

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


def websockets_available() -> bool:
    """Whether the ``websockets`` library can be imported."""
    return importlib.util.find_spec("websockets") is not None


def _default_connector(url: str, **kwargs: Any):
    import websockets

    return websockets.connect(url, **kwargs)


def _close_code(error: BaseException) -> int | None:
    rcvd = getattr(error, "rcvd", None)
    code = getattr(rcvd, "code", None)
    if code is None:
        code = getattr(error, "code", None)
    return code if isinstance(code, int) else None


class ProbeCache:
    """Per-agent probe results with a time-to-live."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, ConnectivityResult]] = {}

    def get(self, agent_id: str) -> ConnectivityResult | None:
        entry = self._entries.get(agent_id)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[agent_id]
            return None
        return result

    def put(self, agent_id: str, result: ConnectivityResult) -> None:
        self._entries[agent_id] = (self._clock(), result)

    def invalidate(self, agent_id: str | None = None) -> None:
        """Drop one agent's result, or everything when no agent is given."""
        if agent_id is None:
            self._entries.clear()
        else:
            self._entries.pop(agent_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class ConnectivityProbe:
    """Tests whether a direct WebSocket to the conversational service works."""

    def __init__(
        self,
        connector: Callable[..., Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        ttl: float | None = None,
        *,
        endpoint: str | None = None,
        proxy_url: str | None = None,
        websocket_supported: Callable[[], bool] = websockets_available,
    ) -> None:
        """
        Initialize the probe.

        Args:
            connector: WebSocket connect function, ``websockets.connect`` by default.
            clock: Monotonic clock used for latency and cache expiry.
            ttl: Cache lifetime in seconds (uses config if not provided).
            endpoint: Direct conversational endpoint (uses config if not provided).
            proxy_url: Relay endpoint, used by ``select_transport``.
            websocket_supported: Capability check for WebSocket support.
        """
        settings = get_settings()
        self._connector = connector or _default_connector
        self._clock = clock
        self._endpoint = endpoint or settings.elevenlabs_ws_url
        self._proxy_url = proxy_url if proxy_url is not None else settings.proxy_ws_url
        self._timeout_ms = settings.probe_timeout_ms
        self._websocket_supported = websocket_supported
        self._probes = 0
        self.cache = ProbeCache(settings.probe_cache_ttl if ttl is None else ttl, clock)

    @property
    def probes_performed(self) -> int:
        """Number of sockets actually opened."""
        return self._probes

    async def test(self, agent_id: str, timeout_ms: int | None = None, force: bool = False) -> ConnectivityResult:
        """
        Probe the direct endpoint for ``agent_id``.

        A result younger than the cache TTL is returned without opening a
        socket unless ``force`` is set.
        """
        if not agent_id:
            return ConnectivityResult(success=False, error="No agent ID provided")

        if not force:
            cached = self.cache.get(agent_id)
            if cached is not None:
                logger.debug(f"[PROBE] cache hit agent_id={agent_id} success={cached.success}")
                return cached.model_copy(update={"cached": True})

        url = f"{self._endpoint}?agent_id={quote(agent_id)}"
        result = await self._probe(url, timeout_ms or self._timeout_ms)
        self.cache.put(agent_id, result.model_copy(update={"cached_at": _now_utc()}))
        return result

    async def test_proxy(self, url: str | None = None, timeout_ms: int | None = None) -> ConnectivityResult:
        """Probe the relay endpoint. Not cached."""
        target = url or self._proxy_url
        if not target:
            return ConnectivityResult(success=False, error="No proxy URL configured")
        return await self._probe(target, timeout_ms or self._timeout_ms)

    async def _probe(self, url: str, timeout_ms: int) -> ConnectivityResult:
        self._probes += 1
        started = self._clock()
        timeout = timeout_ms / 1000

        def elapsed_ms() -> int:
            return int((self._clock() - started) * 1000)

        try:
            ws = await asyncio.wait_for(self._connector(url, open_timeout=None), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[PROBE] timed out after {timeout_ms}ms url={url}")
            return ConnectivityResult(success=False, error="Connection timeout")
        except Exception as e:
            code = _close_code(e)
            if code == NORMAL_CLOSURE:
                latency = elapsed_ms()
                logger.info(f"[PROBE] closed cleanly latency={latency}ms")
                return ConnectivityResult(success=True, latency_ms=latency)
            message = f"Connection closed: {code}" if code else str(e) or e.__class__.__name__
            logger.warning(f"[PROBE] failed url={url}: {message}")
            return ConnectivityResult(success=False, error=message)

        latency = elapsed_ms()
        logger.info(f"[PROBE] reachable latency={latency}ms")
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[PROBE] closing probe socket failed: {e}")
        return ConnectivityResult(success=True, latency_ms=latency)

    async def detect_best_connection_mode(self, agent_id: str) -> ConnectionMode:
        if not self._websocket_supported():
            logger.info("[PROBE] WebSocket support unavailable, using corporate mode")
            return ConnectionMode.CORPORATE

        result = await self.test(agent_id)
        mode = ConnectionMode.WEBSOCKET if result.success else ConnectionMode.CORPORATE
        logger.info(f"[PROBE] connection mode={mode.value}")
        return mode

    async def select_transport(self, agent_id: str, prefer_proxy: bool = False) -> TransportKind:
        """Pick the transport for a new session."""
        mode = await self.detect_best_connection_mode(agent_id)
        if mode == ConnectionMode.CORPORATE:
            return TransportKind.HTTP
        if prefer_proxy and self._proxy_url:
            return TransportKind.PROXY
        return TransportKind.NATIVE

    def invalidate(self, agent_id: str | None = None) -> None:
        self.cache.invalidate(agent_id)
