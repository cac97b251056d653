"""
Destination policy + the small matching rules the evaluator applies to it.

A DestinationPolicy is a read-only snapshot of one destination row. The
admin layer owns and mutates the row; the engine only ever reads the
snapshot it was handed for the current request.
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class DestinationPolicy:
    id: str
    slug: str = ""
    target_url: str = ""
    decoy_url: str = ""

    # Secret token: hash wins, plaintext code is the legacy fallback
    param_hash: str = ""
    param_code: str = ""
    param_ttl_minutes: int = 0           # 0 = token never expires

    # Quota
    max_clicks: int = 0                  # 0 = unlimited
    clicks: int = 0

    # Filters
    allowed_hours: str = ""              # "HH:MM-HH:MM", empty = always
    allowed_countries: tuple[str, ...] = ()
    blocked_countries: tuple[str, ...] = ()
    blocked_ips: tuple[str, ...] = ()    # literal or CIDR, v4/v6
    blocked_isps: tuple[str, ...] = ()   # substring match on "isp org"

    mobile_only: bool = False
    ads_only: bool = False
    bot_protection: bool = True
    active: bool = True


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str = ""


@dataclass
class RequestContext:
    """What the request boundary hands to the evaluator."""
    client_ip: str = ""
    user_agent: str = ""
    referer: str = ""
    query_params: dict[str, str] = field(default_factory=dict)


UNKNOWN_COUNTRY_CODE = "XX"


def contains_ignore_case(values, value: str) -> bool:
    """Trimmed, case-insensitive membership. Empty value never matches."""
    target = (value or "").strip().upper()
    if not target:
        return False
    return any((item or "").strip().upper() == target for item in values)


def is_ip_blocked(ip: str, blocked_ips) -> bool:
    """Literal or CIDR match. Malformed CIDR entries never match."""
    try:
        addr = ipaddress.ip_address((ip or "").strip())
    except ValueError:
        addr = None

    for entry in blocked_ips:
        entry = (entry or "").strip()
        if not entry:
            continue
        if "/" in entry:
            if addr is None:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                continue
            # Mixed families never match
            if network.version == addr.version and addr in network:
                return True
        elif entry == (ip or "").strip():
            return True
    return False


def is_isp_blocked(isp: str, org: str, blocked_isps) -> bool:
    combined = f"{isp or ''} {org or ''}".lower()
    for blocked in blocked_isps:
        needle = (blocked or "").strip().lower()
        if needle and needle in combined:
            return True
    return False


def _parse_hhmm(raw: str) -> int | None:
    parts = raw.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    return hours * 60 + minutes


def is_within_allowed_hours(window: str, now: datetime | None = None) -> bool:
    """
    Check local wall-clock time against "HH:MM-HH:MM".
    Windows whose end is before their start wrap past midnight.
    Anything malformed is treated as unrestricted.
    """
    if not window or not window.strip():
        return True

    parts = window.split("-")
    if len(parts) != 2:
        return True

    start = _parse_hhmm(parts[0])
    end = _parse_hhmm(parts[1])
    if start is None or end is None:
        return True

    now = now or datetime.now()
    current = now.hour * 60 + now.minute

    if end < start:
        return current >= start or current <= end
    return start <= current <= end
