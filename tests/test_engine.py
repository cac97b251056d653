"""Tests for engine wiring, the cache sweeper and the SQL telemetry store."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
from sqlalchemy.dialects import postgresql

from trafficgate.config import Settings
from trafficgate.core.engine import AdmissionEngine
from trafficgate.core.geoip import GeoResolver
from trafficgate.core.telemetry import AccessLogEvent, CounterEvent, SeenIpEvent
from trafficgate.models.store import SqlTelemetryStore
from trafficgate.models.tables import AccessLogEntry

from conftest import BR_GEO, StaticProvider


class TestEngine:
    def test_settings_flow_into_components(self):
        engine = AdmissionEngine(Settings(param_name="k", throttle_max_attempts=3, throttle_block_seconds=30))
        assert engine.evaluator.param_name == "k"
        assert engine.throttle.blocked_reason() == "IP blocked after 3 attempts. Retry in 30s"

    def test_injected_collaborators_are_kept_even_when_empty(self):
        geo = GeoResolver([])
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        engine = AdmissionEngine(Settings(), http_client=client, geo=geo)
        assert len(geo) == 0
        assert engine.geo is geo
        assert engine.http_client is client
        assert engine.evaluator.geo is geo

    def test_sweep_once_counts_removals(self, clock):
        geo = GeoResolver([StaticProvider(BR_GEO)], ttl_seconds=600, clock=clock)
        engine = AdmissionEngine(Settings(), geo=geo)

        async def scenario():
            await geo.put("200.150.10.20", BR_GEO)
            fresh = await engine.sweep_once()
            clock.advance(601)
            stale = await engine.sweep_once()
            return fresh, stale

        fresh, stale = asyncio.run(scenario())
        assert fresh == {"geo": 0, "seen_ips": 0, "param_slots": 0}
        assert stale["geo"] == 1
        assert len(geo) == 0

    def test_start_stop_flushes_telemetry(self):
        store = AsyncMock()
        engine = AdmissionEngine(Settings(), store=store)

        async def scenario():
            engine.start()
            engine.sink.emit(CounterEvent(destination_id="d", clicks=1))
            await engine.stop()

        asyncio.run(scenario())
        store.apply.assert_awaited_once_with(CounterEvent(destination_id="d", clicks=1))
        assert engine._sweeper is None


def _session_maker():
    session = AsyncMock()
    session.add = MagicMock()
    maker = MagicMock()
    maker.return_value.__aenter__.return_value = session
    return maker, session


class TestSqlTelemetryStore:
    def test_access_log_inserted(self):
        maker, session = _session_maker()
        event = AccessLogEvent(
            destination_id="d", ip="1.2.3.4", user_agent="x" * 1500, referer="",
            blocked=True, reason="Country blocked", country_code="BR",
        )

        asyncio.run(SqlTelemetryStore(maker).apply(event))

        row = session.add.call_args.args[0]
        assert isinstance(row, AccessLogEntry)
        assert row.blocked is True
        assert row.reason == "Country blocked"
        assert len(row.user_agent) == 1000
        assert row.referer is None
        session.commit.assert_awaited_once()

    def test_counter_and_seen_ip_execute_statements(self):
        maker, session = _session_maker()
        now = datetime.now(timezone.utc)
        store = SqlTelemetryStore(maker)

        async def scenario():
            await store.apply(CounterEvent(destination_id="d", blocked=1))
            await store.apply(SeenIpEvent(destination_id="d", ip="1.2.3.4",
                                          first_seen=now, last_seen=now, attempts=2))

        asyncio.run(scenario())
        assert session.execute.await_count == 2
        assert session.commit.await_count == 2

    def test_unknown_event_ignored(self):
        maker, session = _session_maker()
        asyncio.run(SqlTelemetryStore(maker).apply(object()))
        session.commit.assert_not_awaited()

    def test_oversized_values_clipped_to_columns(self):
        maker, session = _session_maker()
        event = AccessLogEvent(
            destination_id="d", ip="1" * 300, user_agent="", referer="",
            blocked=True, reason="x", country_code="TOOLONGCODE", region="R" * 40,
        )

        asyncio.run(SqlTelemetryStore(maker).apply(event))

        row = session.add.call_args.args[0]
        assert row.ip == "1" * 64
        assert row.country_code == "TOOLONGC"
        assert row.region == "R" * 16

    def test_seen_ip_upsert_clips_key_and_ip(self):
        maker, session = _session_maker()
        now = datetime.now(timezone.utc)
        event = SeenIpEvent(destination_id="d", ip="2" * 300, first_seen=now, last_seen=now, attempts=1)

        asyncio.run(SqlTelemetryStore(maker).apply(event))

        stmt = session.execute.await_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["ip"] == "2" * 64
        assert len(params["key"]) == 160
