"""
Database models — what the admission engine reads and the telemetry
writer appends to.

Design principles:
  - destinations are owned by the admin layer; the engine only reads them
    and bumps the click/blocked counters
  - access_logs is append-only
  - seen_ips mirrors the in-memory throttle state, best effort
"""

from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from trafficgate.core.policy import DestinationPolicy


class Base(DeclarativeBase):
    pass


def _as_tuple(value) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(v).strip() for v in value if str(v).strip())


class Destination(Base):
    __tablename__ = "destinations"

    id = Column(String(64), primary_key=True, default=lambda: uuid4().hex)
    slug = Column(String(64), nullable=False, index=True)
    target_url = Column(Text, nullable=False)
    decoy_url = Column(Text, nullable=False, default="")

    # Secret token
    param_hash = Column(String(64), nullable=False, default="")   # SHA-256 hex
    param_code = Column(String(255), nullable=False, default="")
    param_ttl = Column(Integer, nullable=False, default=0)        # minutes

    # Counters
    clicks = Column(Integer, nullable=False, default=0)
    blocked = Column(Integer, nullable=False, default=0)
    max_clicks = Column(Integer, nullable=False, default=0)

    # Filters
    allowed_hours = Column(String(16), nullable=False, default="")
    allowed_countries = Column(JSONB, nullable=False, default=list)
    blocked_countries = Column(JSONB, nullable=False, default=list)
    blocked_ips = Column(JSONB, nullable=False, default=list)
    blocked_isps = Column(JSONB, nullable=False, default=list)

    mobile_only = Column(Boolean, nullable=False, default=False)
    ads_only = Column(Boolean, nullable=False, default=False)
    bot_protection = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_policy(self) -> DestinationPolicy:
        return DestinationPolicy(
            id=self.id,
            slug=self.slug or "",
            target_url=self.target_url or "",
            decoy_url=self.decoy_url or "",
            param_hash=self.param_hash or "",
            param_code=self.param_code or "",
            param_ttl_minutes=self.param_ttl or 0,
            max_clicks=self.max_clicks or 0,
            clicks=self.clicks or 0,
            allowed_hours=self.allowed_hours or "",
            allowed_countries=_as_tuple(self.allowed_countries),
            blocked_countries=_as_tuple(self.blocked_countries),
            blocked_ips=_as_tuple(self.blocked_ips),
            blocked_isps=_as_tuple(self.blocked_isps),
            mobile_only=bool(self.mobile_only),
            ads_only=bool(self.ads_only),
            bot_protection=True if self.bot_protection is None else bool(self.bot_protection),
            active=True if self.active is None else bool(self.active),
        )


class AccessLogEntry(Base):
    """Append-only — one row per evaluated request."""
    __tablename__ = "access_logs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    destination_id = Column(String(64), nullable=True, index=True)

    ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    referer = Column(Text, nullable=True)

    # Geo
    country = Column(String(100), nullable=True)
    country_code = Column(String(8), nullable=True)
    region = Column(String(16), nullable=True)
    region_name = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    isp = Column(String(255), nullable=True)
    is_vpn = Column(Boolean, default=False)

    # Device
    device = Column(JSONB, nullable=True)

    # Decision
    blocked = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    redirect_to = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_access_logs_timestamp", "timestamp"),
    )


class SeenIp(Base):
    __tablename__ = "seen_ips"

    key = Column(String(160), primary_key=True)   # "{destination_id}:{ip}"
    ip = Column(String(64), nullable=False)
    destination_id = Column(String(64), nullable=False, index=True)
    first_seen = Column(DateTime(timezone=True), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    blocked_at = Column(DateTime(timezone=True), nullable=True)
    user_agent = Column(Text, nullable=True)
