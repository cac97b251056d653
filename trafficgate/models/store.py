"""
Storage collaborator — policy reads + telemetry writes.

Reads happen on the request path (one SELECT per redirect). Writes only
ever come from the telemetry writer task, each in its own short session,
so a slow or failing database never holds up an admission decision.
"""

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trafficgate.core.policy import DestinationPolicy
from trafficgate.core.telemetry import AccessLogEvent, CounterEvent, SeenIpEvent, TelemetryEvent
from trafficgate.models.tables import AccessLogEntry, Destination, SeenIp

import structlog

logger = structlog.get_logger()


async def get_active_policy(db: AsyncSession, slug: str) -> DestinationPolicy | None:
    """Active destination by slug, case-insensitive."""
    stmt = select(Destination).where(
        func.lower(Destination.slug) == slug.lower(),
        Destination.active == True,  # noqa: E712
    ).limit(1)
    result = await db.execute(stmt)
    destination = result.scalar_one_or_none()
    if destination is None:
        return None
    return destination.to_policy()


class SqlTelemetryStore:
    """Applies telemetry events to Postgres. Used by TelemetrySink."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def apply(self, event: TelemetryEvent) -> None:
        async with self._session_maker() as db:
            if isinstance(event, SeenIpEvent):
                await self._upsert_seen_ip(db, event)
            elif isinstance(event, AccessLogEvent):
                db.add(_access_log_row(event))
            elif isinstance(event, CounterEvent):
                await db.execute(
                    update(Destination)
                    .where(Destination.id == event.destination_id)
                    .values(
                        clicks=Destination.clicks + event.clicks,
                        blocked=Destination.blocked + event.blocked,
                    )
                )
            else:
                logger.warning("telemetry_unknown_event", event_type=type(event).__name__)
                return
            await db.commit()

    async def _upsert_seen_ip(self, db: AsyncSession, event: SeenIpEvent) -> None:
        stmt = pg_insert(SeenIp).values(
            key=_clip(event.key, SeenIp.key),
            ip=_clip(event.ip, SeenIp.ip),
            destination_id=_clip(event.destination_id, SeenIp.destination_id),
            first_seen=event.first_seen,
            last_seen=event.last_seen,
            attempts=event.attempts,
            blocked_at=event.blocked_at,
            user_agent=event.user_agent[:1000] if event.user_agent else None,
        )
        # In-memory state is authoritative; the row just mirrors it
        stmt = stmt.on_conflict_do_update(
            index_elements=[SeenIp.key],
            set_={
                "last_seen": stmt.excluded.last_seen,
                "attempts": stmt.excluded.attempts,
                "blocked_at": stmt.excluded.blocked_at,
                "user_agent": stmt.excluded.user_agent,
            },
        )
        await db.execute(stmt)


def _clip(value: str | None, column) -> str | None:
    """Cut a string to its column's declared length so an odd value can't reject the row."""
    if value is None:
        return None
    length = getattr(column.type, "length", None)
    return value[:length] if length else value


def _access_log_row(event: AccessLogEvent) -> AccessLogEntry:
    return AccessLogEntry(
        timestamp=event.timestamp,
        destination_id=_clip(event.destination_id, AccessLogEntry.destination_id),
        ip=_clip(event.ip, AccessLogEntry.ip),
        user_agent=event.user_agent[:1000] if event.user_agent else None,
        referer=event.referer[:2000] if event.referer else None,
        country=_clip(event.country, AccessLogEntry.country),
        country_code=_clip(event.country_code, AccessLogEntry.country_code),
        region=_clip(event.region, AccessLogEntry.region),
        region_name=_clip(event.region_name, AccessLogEntry.region_name),
        city=_clip(event.city, AccessLogEntry.city),
        isp=_clip(event.isp, AccessLogEntry.isp),
        is_vpn=event.is_vpn,
        device=event.device or None,
        blocked=event.blocked,
        reason=event.reason,
        redirect_to=event.redirect_to or None,
    )
