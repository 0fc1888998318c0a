from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from user_agents import parse as parse_user_agent

from gatekeep.logging import get_logger
from gatekeep.storage.models import DeviceInfo

logger = get_logger(__name__)

# ua-parser family names folded into the labels shown in session lists
_BROWSER_ALIASES = {
    "Mobile Safari": "Safari",
    "Mobile Safari UI/WKWebView": "Safari",
    "Chrome Mobile": "Chrome",
    "Chrome Mobile iOS": "Chrome",
    "Chrome Mobile WebView": "Chrome",
    "Firefox Mobile": "Firefox",
    "Firefox iOS": "Firefox",
    "Edge Mobile": "Edge",
    "Opera Mobile": "Opera",
}
_OS_ALIASES = {"Mac OS X": "macOS"}
_UNKNOWN_FAMILIES = {"", "Other"}


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, as far as the transport can tell."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def ip(self) -> str:
        return self.ip_address or "unknown"

    @property
    def agent(self) -> str:
        return self.user_agent or "Unknown"


class DeviceDetector:
    """Browser/OS/device classification from a User-Agent.

    Parsing is fail-open: an agent the parser chokes on yields an all-unknown
    ``DeviceInfo`` rather than failing the login.
    """

    def parse(self, user_agent: Optional[str]) -> DeviceInfo:
        if not user_agent:
            return DeviceInfo()
        try:
            ua = parse_user_agent(user_agent)
        except Exception as exc:
            logger.warning("user_agent_parse_failed", error=str(exc))
            return DeviceInfo()

        os_name = self._os(ua.os.family, ua.os.version_string)
        if ua.is_tablet:
            device = "Tablet"
        elif ua.is_mobile:
            device = "Mobile"
        else:
            device = "Desktop"
        return DeviceInfo(
            browser=self._family(ua.browser.family, _BROWSER_ALIASES),
            os=os_name,
            device=device,
            platform=os_name,
            version=ua.browser.version_string or "Unknown",
        )

    @staticmethod
    def _family(family: Optional[str], aliases: dict) -> str:
        if not family or family in _UNKNOWN_FAMILIES:
            return "Unknown"
        return aliases.get(family, family)

    @classmethod
    def _os(cls, family: Optional[str], version: Optional[str]) -> str:
        name = cls._family(family, _OS_ALIASES)
        # Windows is the one OS whose release number users recognise
        if name == "Windows" and version:
            return f"Windows {version}"
        return name

    @staticmethod
    def describe(info: DeviceInfo) -> str:
        if info.browser == "Unknown" and info.os == "Unknown":
            return "Unknown Device"
        description = f"{info.browser} on {info.os}"
        if info.device != "Desktop":
            description += f" ({info.device})"
        return description
