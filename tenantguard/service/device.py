"""Client device metadata for session listings and audit entries.

Nothing here carries authorization weight; the parsing is a coarse keyword
match, good enough to label sessions for their owner.
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

from tenantguard.storage.models import DeviceInfo

_BOT_MARKERS = (
    "bot",
    "crawler",
    "spider",
    "scraper",
    "slurp",
    "facebookexternalhit",
    "baiduspider",
    "yandex",
)

# Order matters: Edge and Opera also announce Chrome, Chrome announces Safari
_BROWSERS = (
    ("edg/", "Edge"),
    ("opr/", "Opera"),
    ("firefox/", "Firefox"),
    ("chrome/", "Chrome"),
    ("safari/", "Safari"),
)

_OPERATING_SYSTEMS = (
    ("iphone", "iOS"),
    ("ipad", "iOS"),
    ("android", "Android"),
    ("windows", "Windows"),
    ("mac os x", "macOS"),
    ("macintosh", "macOS"),
    ("cros", "ChromeOS"),
    ("linux", "Linux"),
)


def _match(ua: str, table) -> str:
    for marker, label in table:
        if marker in ua:
            return label
    return "Unknown"


def _device_type(ua: str) -> str:
    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        return "Tablet"
    if "mobile" in ua or "iphone" in ua:
        return "Mobile"
    return "Desktop"


def parse_device_info(
    user_agent: Optional[str],
    *,
    ip_address: Optional[str] = None,
    accept_language: Optional[str] = None,
    country_code: Optional[str] = None,
    city: Optional[str] = None,
) -> DeviceInfo:
    ua = (user_agent or "").lower()
    return DeviceInfo(
        device_type=_device_type(ua),
        browser=_match(ua, _BROWSERS),
        os=_match(ua, _OPERATING_SYSTEMS),
        ip_address=ip_address,
        user_agent=user_agent,
        country_code=country_code.upper()[:2] if country_code else None,
        city=city,
        accept_language=accept_language,
    )


def device_fingerprint(user_agent: Optional[str], accept_language: Optional[str] = None) -> str:
    """Stable SHA-256 over user agent and language; the IP is left out since it moves."""
    combined = "|".join([user_agent or "", accept_language or ""])
    return hashlib.sha256(combined.encode()).hexdigest()


def fingerprint_for(device: Optional[DeviceInfo]) -> Optional[str]:
    if device is None or not device.user_agent:
        return None
    return device_fingerprint(device.user_agent, device.accept_language)


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = lowered.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if not remote_addr:
        return None
    if remote_addr.startswith("["):
        return remote_addr[1:].split("]", 1)[0]
    if remote_addr.count(":") == 1:
        return remote_addr.split(":", 1)[0]
    return remote_addr


def is_bot(user_agent: Optional[str]) -> bool:
    ua = (user_agent or "").lower()
    return any(marker in ua for marker in _BOT_MARKERS)


def describe_device(device: DeviceInfo) -> str:
    return f"{device.browser or 'Unknown'} on {device.os or 'Unknown'} ({device.device_type or 'Desktop'})"
