"""
Client IP resolution at the request boundary.

Precedence:
  1. CF-Connecting-IP (set by the trusted edge proxy)
  2. X-Real-IP
  3. First non-empty entry of X-Forwarded-For
  4. Socket peer address

"host:port" and "[v6]:port" forms are reduced to the bare address.
Anything longer than MAX_IP_LENGTH is not an address and is cut there
before it reaches the caches or the access log.
"""


MAX_IP_LENGTH = 64


def normalize_ip(raw: str | None) -> str:
    ip = (raw or "").strip()[:MAX_IP_LENGTH]
    if not ip:
        return ""

    # [::1]:8080
    if ip.startswith("["):
        end = ip.find("]")
        return ip[1:end] if end > 0 else ip[1:]

    # 1.2.3.4:8080 (a bare v6 address has more than one colon)
    if ip.count(":") == 1:
        return ip.rsplit(":", 1)[0]

    return ip


def first_forwarded_ip(xff: str | None) -> str:
    for part in (xff or "").split(","):
        ip = normalize_ip(part)
        if ip:
            return ip
    return ""


def get_client_ip(headers, peer: str | None = None) -> str:
    """`headers` is any case-insensitive mapping (Starlette Headers, dict)."""
    for name in ("cf-connecting-ip", "x-real-ip"):
        ip = normalize_ip(headers.get(name))
        if ip:
            return ip

    ip = first_forwarded_ip(headers.get("x-forwarded-for"))
    if ip:
        return ip

    return normalize_ip(peer)
