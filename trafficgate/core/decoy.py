"""
Decoy page — what denied traffic sees instead of the target.

If a decoy URL is configured its HTML is fetched and served in place, with a
<base href> injected so relative assets still resolve against the original
site. Anything going wrong falls back to a neutral built-in page.
"""

import html
from urllib.parse import urlparse, urlunparse

import httpx

import structlog

logger = structlog.get_logger()

# Plain desktop browser UA so the decoy site serves its normal page
FETCH_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)

DEFAULT_DECOY_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Welcome</title>
</head>
<body>
<main>
<h1>Welcome</h1>
<p>This page is under construction. Please check back soon.</p>
</main>
</body>
</html>
"""


def base_href_for_url(raw: str) -> str:
    """Directory of the URL, without query/fragment. Empty if unparseable."""
    try:
        parsed = urlparse(raw.strip())
    except ValueError:
        return ""
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""

    path = parsed.path or "/"
    if not path.endswith("/"):
        path = path[: path.rfind("/") + 1] or "/"

    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def inject_base_tag(page: str, base_href: str) -> str:
    if not page or not base_href:
        return page

    lower = page.lower()
    if "<base" in lower:
        return page

    tag = f'<base href="{html.escape(base_href, quote=True)}">'
    head_idx = lower.find("<head")
    if head_idx != -1:
        close = lower.find(">", head_idx)
        if close != -1:
            return page[: close + 1] + tag + page[close + 1:]
    return tag + page


async def fetch_decoy_html(url: str, client: httpx.AsyncClient, timeout: float = 4.0) -> str | None:
    url = (url or "").strip()
    if not url:
        return None

    try:
        resp = await client.get(url, headers={"User-Agent": FETCH_USER_AGENT}, timeout=timeout)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning("decoy_fetch_failed", url=url, error=str(e))
        return None

    if resp.status_code >= 400 or not resp.text:
        logger.warning("decoy_fetch_bad_response", url=url, status=resp.status_code)
        return None

    return inject_base_tag(resp.text, base_href_for_url(url))


async def render_decoy(url: str, client: httpx.AsyncClient, timeout: float = 4.0) -> str:
    body = await fetch_decoy_html(url, client, timeout)
    return body if body is not None else DEFAULT_DECOY_HTML
