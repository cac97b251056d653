"""
Gate endpoint — /go/{slug}

Flow:
  1. Look up the active destination by slug (unknown slug → decoy)
  2. Resolve client IP, UA, referer, query params
  3. Run the admission chain
  4. Enqueue telemetry (access log row, click/blocked counter)
  5. Allowed → 302 to the target
     Denied  → decoy page (200, looks like an ordinary site)

Telemetry is never awaited here; persistence happens on the writer task.
"""

import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trafficgate.core.bot_detection import describe_device
from trafficgate.core.client_ip import get_client_ip
from trafficgate.core.decoy import render_decoy
from trafficgate.core.engine import AdmissionEngine
from trafficgate.core.geoip import GeoRecord, fix_mojibake
from trafficgate.core.policy import RequestContext
from trafficgate.core.telemetry import AccessLogEvent, CounterEvent
from trafficgate.models.database import get_db
from trafficgate.models.store import get_active_policy

import structlog

logger = structlog.get_logger()
router = APIRouter()

REASON_UNKNOWN_DESTINATION = "Destination not found"


def get_engine(request: Request) -> AdmissionEngine:
    """FastAPI dependency — the process-wide engine built in the lifespan."""
    return request.app.state.engine


def _request_context(request: Request) -> RequestContext:
    peer = request.client.host if request.client else ""
    return RequestContext(
        client_ip=get_client_ip(request.headers, peer),
        user_agent=request.headers.get("user-agent", ""),
        referer=request.headers.get("referer", ""),
        query_params=dict(request.query_params),
    )


def _access_log_event(
    ctx: RequestContext,
    destination_id: str | None,
    geo: GeoRecord | None,
    blocked: bool,
    reason: str,
    redirect_to: str = "",
) -> AccessLogEvent:
    geo = geo or GeoRecord(country="", country_code="")
    return AccessLogEvent(
        destination_id=destination_id,
        ip=ctx.client_ip,
        user_agent=ctx.user_agent,
        referer=ctx.referer,
        blocked=blocked,
        reason=reason,
        redirect_to=redirect_to,
        country=fix_mojibake(geo.country),
        country_code=geo.country_code,
        region=geo.region,
        region_name=fix_mojibake(geo.region_name),
        city=fix_mojibake(geo.city),
        isp=fix_mojibake(geo.isp),
        is_vpn=geo.proxy or geo.hosting,
        device=describe_device(ctx.user_agent),
    )


async def _decoy_response(engine: AdmissionEngine, decoy_url: str = "") -> HTMLResponse:
    url = decoy_url.strip() or engine.settings.decoy_url
    body = await render_decoy(url, engine.http_client, engine.settings.decoy_fetch_timeout_seconds)
    return HTMLResponse(content=body, status_code=200)


@router.api_route("/go/{slug}", methods=["GET", "POST"])
async def gate(
    request: Request,
    slug: str,
    db: AsyncSession = Depends(get_db),
    engine: AdmissionEngine = Depends(get_engine),
):
    started = time.monotonic()
    ctx = _request_context(request)
    slug = slug.split("?")[0].strip()

    try:
        policy = await get_active_policy(db, slug) if slug else None
    except SQLAlchemyError as e:
        # Can't evaluate without a policy: fail closed
        logger.error("policy_lookup_failed", slug=slug, error=str(e))
        return await _decoy_response(engine)

    if policy is None:
        engine.sink.emit(_access_log_event(ctx, None, None, True, REASON_UNKNOWN_DESTINATION))
        logger.info("destination_not_found", slug=slug, ip=ctx.client_ip)
        return await _decoy_response(engine)

    result = await engine.evaluator.evaluate(policy, ctx)

    # Denied before the geo step: enrich from cache only, no provider call
    geo = result.geo or await engine.geo.get(ctx.client_ip) or GeoRecord(country="", country_code="")

    elapsed_ms = int((time.monotonic() - started) * 1000)

    if result.allowed:
        engine.sink.emit(CounterEvent(destination_id=policy.id, clicks=1))
        engine.sink.emit(_access_log_event(
            ctx, policy.id, geo, False, result.reason, redirect_to=policy.target_url,
        ))
        logger.info("access_allowed", destination_id=policy.id, ip=ctx.client_ip,
                    country=geo.country_code, elapsed_ms=elapsed_ms)
        return RedirectResponse(url=policy.target_url, status_code=302)

    engine.sink.emit(CounterEvent(destination_id=policy.id, blocked=1))
    engine.sink.emit(_access_log_event(ctx, policy.id, geo, True, result.reason))
    logger.info("access_diverted", destination_id=policy.id, ip=ctx.client_ip,
                reason=result.reason, country=geo.country_code, elapsed_ms=elapsed_ms)
    return await _decoy_response(engine, policy.decoy_url)
