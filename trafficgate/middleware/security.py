from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

GATE_PREFIX = "/go/"
API_PREFIX = "/api/"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Anything that would tell a reviewer which stack answered
IDENTIFYING_HEADERS = ("server", "x-powered-by")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        for name in IDENTIFYING_HEADERS:
            if name in response.headers:
                del response.headers[name]

        path = request.url.path
        is_gate = path.startswith(GATE_PREFIX)

        # Admission decisions are per request: a cached 302 would skip the gate
        if is_gate or path.startswith(API_PREFIX):
            response.headers.update(NO_STORE_HEADERS)

        if is_gate:
            response.headers["Referrer-Policy"] = "no-referrer"
            response.headers["X-Robots-Tag"] = "noindex, nofollow"
        else:
            response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response
