"""
Policy evaluator — the admission chain.

Order (first failure wins, each with its own reason):
  1. Secret token present, valid, not expired
  2. Throttle block (denies even with a valid token)
  3. Ads-only: request must look like a Facebook/Instagram ad click
  4. Click quota
  5. Allowed-hours window
  6. Country allow-list, then block-list (skipped for unknown geo)
  7. IP block-list (literal / CIDR)
  8. ISP / org block-list
  9. Mobile-only
 10. Bot + automation signatures

Always last: the throttle records the outcome, and may turn a plain
failure into a block.

Cheap local checks run before the geo lookup; the geo lookup runs before
the UA signature checks. Nothing in here raises to the caller.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from trafficgate.core import bot_detection
from trafficgate.core.geoip import GeoRecord, GeoResolver
from trafficgate.core.param_auth import ParamAuthenticator
from trafficgate.core.policy import (
    UNKNOWN_COUNTRY_CODE,
    AccessDecision,
    DestinationPolicy,
    RequestContext,
    contains_ignore_case,
    is_ip_blocked,
    is_isp_blocked,
    is_within_allowed_hours,
)
from trafficgate.core.throttle import AdmissionThrottle

import structlog

logger = structlog.get_logger()

REASON_ALLOWED = "Access granted"
REASON_PARAM_MISSING = "Missing required parameter"
REASON_PARAM_INVALID = "Invalid parameter"
REASON_PARAM_EXPIRED = "Parameter expired"
REASON_ADS_ONLY = "Access only via Facebook/Instagram ads"
REASON_CLICK_LIMIT = "Click limit reached"
REASON_OUTSIDE_HOURS = "Outside allowed hours"
REASON_COUNTRY_NOT_ALLOWED = "Country not allowed"
REASON_COUNTRY_BLOCKED = "Country blocked"
REASON_IP_BLOCKED = "IP blocked"
REASON_ISP_BLOCKED = "ISP blocked"
REASON_MOBILE_ONLY = "Only mobile devices allowed"
REASON_BOT = "Bot detected (UA)"
REASON_AUTOMATION = "Automation tool detected"


@dataclass(frozen=True)
class Evaluation:
    decision: AccessDecision
    geo: GeoRecord | None = None   # None when denied before the geo lookup

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    @property
    def reason(self) -> str:
        return self.decision.reason


class PolicyEvaluator:
    def __init__(
        self,
        params: ParamAuthenticator,
        throttle: AdmissionThrottle,
        geo: GeoResolver,
        param_name: str = "apx",
        now: Callable[[], datetime] = datetime.now,
    ):
        self.params = params
        self.throttle = throttle
        self.geo = geo
        self.param_name = param_name
        self._now = now

    async def evaluate(self, policy: DestinationPolicy, request: RequestContext) -> Evaluation:
        ip = request.client_ip or ""
        ua = request.user_agent or ""
        query = request.query_params or {}

        geo: GeoRecord | None = None
        reason = await self._check_token(policy, query)
        if reason is None:
            reason = await self.throttle.check_block(policy.id, ip)
        if reason is None:
            geo = await self.geo.resolve(ip)
            reason = self._check_rules(policy, request, geo)

        allowed = reason is None
        decision = await self.throttle.record(
            policy.id, ip, ua, allowed, REASON_ALLOWED if allowed else reason,
        )

        if not decision.allowed:
            logger.info("access_denied", destination_id=policy.id, ip=ip, reason=decision.reason)
        return Evaluation(decision=decision, geo=geo)

    async def _check_token(self, policy: DestinationPolicy, query: dict) -> str | None:
        token = query.get(self.param_name) or ""
        if not isinstance(token, str) or not token:
            return REASON_PARAM_MISSING
        if not self.params.verify(policy, token):
            return REASON_PARAM_INVALID
        if policy.param_ttl_minutes > 0 and await self.params.is_expired(policy.id, policy, token):
            return REASON_PARAM_EXPIRED
        return None

    def _check_rules(
        self,
        policy: DestinationPolicy,
        request: RequestContext,
        geo: GeoRecord,
    ) -> str | None:
        ua = request.user_agent or ""

        if policy.ads_only and not bot_detection.is_ad_attributed_traffic(
            request.referer, ua, request.query_params,
        ):
            return REASON_ADS_ONLY

        if policy.max_clicks > 0 and policy.clicks >= policy.max_clicks:
            return REASON_CLICK_LIMIT

        if policy.allowed_hours and not is_within_allowed_hours(policy.allowed_hours, self._now()):
            return REASON_OUTSIDE_HOURS

        country_code = (geo.country_code or "").strip().upper()
        if country_code and country_code != UNKNOWN_COUNTRY_CODE:
            if policy.allowed_countries and not contains_ignore_case(policy.allowed_countries, country_code):
                return REASON_COUNTRY_NOT_ALLOWED
            if policy.blocked_countries and contains_ignore_case(policy.blocked_countries, country_code):
                return REASON_COUNTRY_BLOCKED

        if policy.blocked_ips and is_ip_blocked(request.client_ip, policy.blocked_ips):
            return REASON_IP_BLOCKED

        if policy.blocked_isps and is_isp_blocked(geo.isp, geo.org, policy.blocked_isps):
            return REASON_ISP_BLOCKED

        if policy.mobile_only and not bot_detection.is_mobile_device(ua):
            return REASON_MOBILE_ONLY

        if policy.bot_protection:
            if bot_detection.is_bot(ua):
                return REASON_BOT
            if bot_detection.is_automation_tool(ua):
                return REASON_AUTOMATION

        return None
