"""
device.py -- Device and origin fingerprinting for login auditing.

Three pure-ish helpers used by the login flow to annotate every attempt:

  parse_user_agent()  user-agent string -> DeviceInfo(browser, os, device)
  extract_ip()        forwarding headers -> client IP or "unknown"
  resolve_location()  IP -> GeoLocation or None (best-effort HTTP lookup)

Classification is heuristic substring matching, first match wins. The order
of checks matters: Chrome user agents also contain "Safari", and Edge user
agents also contain "Chrome", so each test excludes the tokens of the
browsers checked after it. Nothing in this module raises on bad input --
unknown values degrade to the sentinels in core/models.py.
"""

import ipaddress
import logging
import re
from collections.abc import Mapping
from typing import Optional

import requests

from core.config import Settings
from core.models import (
    DEVICE_DESKTOP,
    DEVICE_MOBILE,
    DEVICE_TABLET,
    UNKNOWN_BROWSER,
    UNKNOWN_IP,
    UNKNOWN_OS,
    DeviceInfo,
    GeoLocation,
)

logger = logging.getLogger("spendtracker.device")

_MAC_VERSION_RE = re.compile(r"Mac OS X ([0-9_]+)")

# Fixed precedence: proxy chain first, then the single-value proxy header,
# then the CDN header.
_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

# Shared session for connection pooling, same pattern as the other outbound
# HTTP callers. Geolocation providers never need to redirect more than once.
_session = requests.Session()
_session.max_redirects = 3


# ---------------------------------------------------------------------------
# User agent
# ---------------------------------------------------------------------------


def _detect_browser(ua: str) -> str:
    if "Chrome" in ua and "Edg" not in ua:
        return "Chrome"
    if "Firefox" in ua:
        return "Firefox"
    if "Safari" in ua and "Chrome" not in ua:
        return "Safari"
    if "Edg" in ua:
        return "Edge"
    if "OPR" in ua or "Opera" in ua:
        return "Opera"
    return UNKNOWN_BROWSER


def _detect_os(ua: str) -> str:
    if "Windows NT 10.0" in ua:
        return "Windows 10/11"
    if "Windows NT" in ua:
        return "Windows"
    if "Mac OS X" in ua:
        match = _MAC_VERSION_RE.search(ua)
        return f"macOS {match.group(1).replace('_', '.')}" if match else "macOS"
    if "Linux" in ua:
        return "Linux"
    if "Android" in ua:
        return "Android"
    if "iOS" in ua or "iPhone" in ua or "iPad" in ua:
        return "iOS"
    return UNKNOWN_OS


def _detect_device(ua: str) -> str:
    if "Mobile" in ua or "Android" in ua or "iPhone" in ua:
        return DEVICE_MOBILE
    if "Tablet" in ua or "iPad" in ua:
        return DEVICE_TABLET
    return DEVICE_DESKTOP


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Classify a raw user-agent string. Never raises.

    Example:
        parse_user_agent("Mozilla/5.0 (Windows NT 10.0; Win64; x64) ... Chrome/119.0 ...")
        -> DeviceInfo(browser="Chrome", os="Windows 10/11", device="Desktop")
    """
    ua = user_agent if isinstance(user_agent, str) else ""
    return DeviceInfo(browser=_detect_browser(ua), os=_detect_os(ua), device=_detect_device(ua))


def describe_device(info: DeviceInfo) -> str:
    """Human-readable one-liner, e.g. "Safari on iOS (Mobile)"."""
    description = f"{info.browser} on {info.os}"
    if info.device != DEVICE_DESKTOP:
        description += f" ({info.device})"
    return description


# ---------------------------------------------------------------------------
# Client IP
# ---------------------------------------------------------------------------


def extract_ip(headers: Mapping[str, str]) -> str:
    """Return the client IP from forwarding headers, or "unknown".

    Accepts Starlette's case-insensitive Headers or a plain dict; keys are
    compared lower-cased. Only the first x-forwarded-for segment is used --
    later segments are proxies appended along the way.
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in _IP_HEADERS:
        value = lowered.get(name)
        if not value:
            continue
        candidate = value.split(",")[0].strip() if name == "x-forwarded-for" else value.strip()
        if candidate:
            return candidate
    return UNKNOWN_IP


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


def _is_public_address(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved or addr.is_unspecified)


def resolve_location(ip: str, settings: Settings) -> Optional[GeoLocation]:
    """Look up a coarse location for a public IP. Returns None when unknown.

    None is a normal answer: private and loopback ranges, the "unknown"
    sentinel, a disabled lookup, and any network or decoding failure all
    produce it. Callers store whatever comes back and move on.
    """
    if not settings.geoip_enabled or not _is_public_address(ip):
        return None
    try:
        resp = _session.get(
            settings.geoip_url.format(ip=ip),
            headers={"User-Agent": "SpendTracker/1.0"},
            timeout=settings.geoip_timeout_seconds,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Geolocation lookup failed for %s: %s", ip, e)
        return None
    if not isinstance(data, dict) or data.get("error"):
        return None
    city = data.get("city") or None
    country = data.get("country_name") or data.get("country") or None
    if city is None and country is None:
        return None
    return GeoLocation(city=city, country=country)
