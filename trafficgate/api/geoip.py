"""GeoIP lookup — resolve an IP (or the caller's own) through the cached provider chain."""

import ipaddress

from fastapi import APIRouter, Depends, HTTPException, Request

from trafficgate.api.redirect import get_engine
from trafficgate.core.client_ip import get_client_ip, normalize_ip
from trafficgate.core.engine import AdmissionEngine

router = APIRouter(prefix="/api", tags=["geoip"])


@router.get("/geoip")
async def geoip_lookup(
    request: Request,
    ip: str | None = None,
    engine: AdmissionEngine = Depends(get_engine),
):
    target = normalize_ip(ip)
    if target:
        try:
            ipaddress.ip_address(target)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid IP address")
    else:
        peer = request.client.host if request.client else ""
        target = get_client_ip(request.headers, peer)

    record = await engine.geo.resolve(target)
    return {"ip": target, **record.to_dict()}
