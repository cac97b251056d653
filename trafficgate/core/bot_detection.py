"""
Request signature classification — pure functions over request text.

Checks:
  1. Known crawler / scraper / HTTP-client tokens in the User-Agent
  2. Automation + driver signatures (tools that also look like real browsers)
  3. Mobile device detection (fails open on empty or unrecognized UAs)
  4. Ad attribution (Facebook/Instagram click IDs, UTM, ad-redirect referers,
     in-app browser UAs)

No I/O, no state. The signature lists are module constants, built once at
import and never touched at runtime.
"""

from urllib.parse import urlparse

from user_agents import parse as parse_ua

# --- Known bot UA substrings (matched lowercased) ---
BOT_UA_TOKENS: tuple[str, ...] = (
    # Search engines
    "googlebot",
    "bingbot",
    "slurp",
    "duckduckbot",
    "baiduspider",
    "yandexbot",
    "sogou",
    "exabot",
    "seznambot",
    # Social / ad review crawlers
    "facebot",
    "facebookexternalhit",
    "facebookcatalog",
    "adsbot",
    "mediapartners",
    "adreview",
    # SEO crawlers + archivers
    "ia_archiver",
    "mj12bot",
    "semrushbot",
    "ahrefsbot",
    "dotbot",
    "rogerbot",
    "httrack",
    # Generic markers
    "crawler",
    "spider",
    "bot",
    "scraper",
    # HTTP clients + scripting runtimes
    "curl",
    "wget",
    "python-requests",
    "python-urllib",
    "httpie",
    "postman",
    "insomnia",
    "apache-httpclient",
    "go-http-client",
    "java/",
    "libwww",
    "lwp-trivial",
    "php/",
    "ruby",
    "perl",
    # Headless browsers
    "selenium",
    "phantomjs",
    "headless",
    "puppeteer",
    "playwright",
)

# --- Automation / driver signatures ---
AUTOMATION_UA_TOKENS: tuple[str, ...] = (
    "selenium",
    "webdriver",
    "puppeteer",
    "playwright",
    "phantomjs",
    "headless",
    "headlesschrome",
    "chromeheadless",
    "electron",
    "nightmare",
    "cypress",
    "browserless",
    "chrome-lighthouse",
    "inspect",
    "debugger",
    "lucid",
    "clarity",
)

MOBILE_UA_TOKENS: tuple[str, ...] = ("iphone", "ipod", "ipad", "android")
DESKTOP_UA_TOKENS: tuple[str, ...] = ("windows nt", "macintosh", "x11")

# --- Ad attribution ---
AD_UTM_SOURCES: frozenset[str] = frozenset({"facebook", "instagram", "fb", "ig", "meta"})

# Link-shim / ad-manager hosts that only show up on ad clicks
AD_REDIRECT_HOSTS: frozenset[str] = frozenset({
    "l.facebook.com",
    "lm.facebook.com",
    "l.instagram.com",
    "business.facebook.com",
})

# Host + path prefixes for ad landing paths on the main domains
AD_REDIRECT_PATHS: tuple[str, ...] = (
    "fb.com/ads",
    "facebook.com/ads",
    "instagram.com/ads",
)

PLATFORM_DOMAINS: tuple[str, ...] = ("facebook.com", "instagram.com")

# Facebook / Instagram in-app browser markers (matched lowercased)
IN_APP_UA_TOKENS: tuple[str, ...] = (
    "fban/",
    "fbios",
    "fb_iab",
    "fbav/",
    "instagram",
    "[fban",
    "[fbss",
)


def _contains_any(haystack: str, needles) -> bool:
    return any(needle in haystack for needle in needles)


def is_bot(user_agent: str | None) -> bool:
    """Known crawler, scraper or HTTP-client UA."""
    return _contains_any((user_agent or "").lower(), BOT_UA_TOKENS)


def is_automation_tool(user_agent: str | None) -> bool:
    """Browser-automation / driver UA."""
    return _contains_any((user_agent or "").lower(), AUTOMATION_UA_TOKENS)


def is_mobile_device(user_agent: str | None) -> bool:
    """
    Phone/tablet check. Fails open: an empty or unrecognized UA counts as
    mobile so stripped-UA clients aren't thrown away. Only an explicit
    desktop marker says no.
    """
    ua = (user_agent or "").lower()
    if not ua.strip():
        return True

    if _contains_any(ua, MOBILE_UA_TOKENS):
        return True

    if _contains_any(ua, DESKTOP_UA_TOKENS) or ("linux" in ua and "android" not in ua):
        return False

    return True


def _referer_host_path(referer: str) -> tuple[str, str]:
    """Lowercased (host, path) of a referer. Tolerates scheme-less values."""
    raw = (referer or "").strip().lower()
    if not raw:
        return "", ""
    if "://" not in raw:
        raw = "//" + raw
    try:
        parsed = urlparse(raw)
    except ValueError:
        return "", ""
    host = (parsed.hostname or "").rstrip(".")
    return host, parsed.path or ""


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def _is_ad_redirect_referer(host: str, path: str) -> bool:
    if host in AD_REDIRECT_HOSTS:
        return True
    location = _strip_www(host) + path
    return any(location.startswith(prefix) for prefix in AD_REDIRECT_PATHS)


def _is_platform_host(host: str) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in PLATFORM_DOMAINS)


def is_ad_attributed_traffic(
    referer: str | None,
    user_agent: str | None,
    query_params: dict | None,
) -> bool:
    """Did this request come from a Facebook/Instagram ad click?"""
    params = query_params or {}

    if "fbclid" in params or "igshid" in params:
        return True

    utm_source = params.get("utm_source")
    if isinstance(utm_source, str) and utm_source.lower() in AD_UTM_SOURCES:
        return True

    host, path = _referer_host_path(referer or "")
    referer_from_ad = bool(host) and _is_ad_redirect_referer(host, path)
    in_app_ua = _contains_any((user_agent or "").lower(), IN_APP_UA_TOKENS)

    if referer_from_ad:
        # With or without the in-app UA, the link shim only serves ad clicks
        return True

    if in_app_ua and host and _is_platform_host(host):
        return True

    return False


def describe_device(user_agent: str | None) -> dict:
    """Device enrichment for access-log rows. Not used for admission."""
    ua_str = user_agent or ""
    if not ua_str:
        return {
            "device_class": "unknown",
            "os_family": "unknown",
            "browser_family": "unknown",
        }

    parsed = parse_ua(ua_str)
    if parsed.is_tablet:
        device_class = "tablet"
    elif parsed.is_mobile:
        device_class = "mobile"
    elif parsed.is_pc:
        device_class = "desktop"
    elif parsed.is_bot:
        device_class = "bot"
    else:
        device_class = "unknown"

    return {
        "device_class": device_class,
        "os_family": parsed.os.family or "unknown",
        "browser_family": parsed.browser.family or "unknown",
    }
