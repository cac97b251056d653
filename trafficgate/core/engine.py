"""
Engine wiring — owns the shared caches, the provider client, the telemetry
sink and the single background sweeper.

One AdmissionEngine lives per process (built in the app lifespan). The
sweeper evicts expired entries from all three caches on a fixed interval
and runs until shutdown; it does no per-request coordination.
"""

import asyncio

import httpx

from trafficgate.config import Settings
from trafficgate.core.evaluator import PolicyEvaluator
from trafficgate.core.geoip import GeoResolver, default_providers
from trafficgate.core.param_auth import ParamAuthenticator
from trafficgate.core.telemetry import TelemetrySink, TelemetryStore
from trafficgate.core.throttle import AdmissionThrottle

import structlog

logger = structlog.get_logger()


class AdmissionEngine:
    def __init__(
        self,
        settings: Settings,
        store: TelemetryStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        geo: GeoResolver | None = None,
    ):
        self.settings = settings
        if http_client is None:
            http_client = httpx.AsyncClient(follow_redirects=True)
        self.http_client = http_client
        self.sink = TelemetrySink(store, maxsize=settings.telemetry_queue_size)

        # GeoResolver defines __len__: an empty one is falsy
        self.geo = geo if geo is not None else GeoResolver(
            default_providers(self.http_client, settings.geo_provider_timeout_seconds),
            ttl_seconds=settings.geo_cache_ttl_seconds,
        )
        self.params = ParamAuthenticator(
            retention_seconds=settings.param_slot_retention_hours * 3600,
        )
        self.throttle = AdmissionThrottle(
            max_attempts=settings.throttle_max_attempts,
            block_seconds=settings.throttle_block_seconds,
            retention_seconds=settings.seen_ip_retention_hours * 3600,
            sink=self.sink,
        )
        self.evaluator = PolicyEvaluator(
            params=self.params,
            throttle=self.throttle,
            geo=self.geo,
            param_name=settings.param_name,
        )
        self._sweeper: asyncio.Task | None = None

    async def sweep_once(self) -> dict:
        removed = {
            "geo": await self.geo.sweep(),
            "seen_ips": await self.throttle.sweep(),
            "param_slots": await self.params.sweep(),
        }
        if any(removed.values()):
            logger.debug("cache_sweep", **removed)
        return removed

    async def _sweep_forever(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("cache_sweep_failed", error=str(e))

    def start(self) -> None:
        self.sink.start()
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="cache-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.sink.stop()
        await self.http_client.aclose()
