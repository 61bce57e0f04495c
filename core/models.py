from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Sentinels returned by the device parser when nothing matches. The parser
# never raises; unknown input degrades to these values.
UNKNOWN_BROWSER = "Unknown Browser"
UNKNOWN_OS = "Unknown OS"
UNKNOWN_IP = "unknown"

DEVICE_DESKTOP = "Desktop"
DEVICE_MOBILE = "Mobile"
DEVICE_TABLET = "Tablet"


@dataclass(frozen=True)
class DeviceInfo:
    browser: str = UNKNOWN_BROWSER
    os: str = UNKNOWN_OS
    device: str = DEVICE_DESKTOP  # "Desktop" | "Mobile" | "Tablet"


@dataclass(frozen=True)
class GeoLocation:
    """Best-effort location for an IP address. Either part may be missing."""

    city: Optional[str] = None
    country: Optional[str] = None

    def label(self) -> str:
        return f"{self.city or 'Unknown'}, {self.country or 'Unknown'}"
