"""
User-agent classification for the Device dimension.
"""

import re
from dataclasses import dataclass
from typing import Optional

from user_agents import parse as parse_ua

MOBILE_PATTERN = re.compile(r"Mobile|Android|iPhone", re.IGNORECASE)
TABLET_PATTERN = re.compile(r"Tablet|iPad", re.IGNORECASE)

# Family reported by user-agents when it cannot identify a browser/OS
_UNKNOWN_FAMILIES = {"", "Other"}


@dataclass(frozen=True)
class DeviceInfo:
    browser: str
    browser_version: Optional[str]
    os: str
    os_version: Optional[str]
    device_type: str  # desktop, mobile, tablet


def _family(name: Optional[str]) -> str:
    if not name or name in _UNKNOWN_FAMILIES:
        return "Unknown"
    return name


def get_device_type(user_agent_string: str, is_mobile: bool = False, is_tablet: bool = False) -> str:
    """
    Resolve the device type.

    Order: parser mobile flag, parser tablet flag, mobile keywords,
    tablet keywords, else desktop.
    """
    if is_mobile:
        return "mobile"
    if is_tablet:
        return "tablet"
    if MOBILE_PATTERN.search(user_agent_string):
        return "mobile"
    if TABLET_PATTERN.search(user_agent_string):
        return "tablet"
    return "desktop"


def parse_user_agent(user_agent_string: str) -> DeviceInfo:
    """Parse a user agent into browser/OS names, versions and device type."""
    ua = parse_ua(user_agent_string or "")

    return DeviceInfo(
        browser=_family(ua.browser.family),
        browser_version=ua.browser.version_string or None,
        os=_family(ua.os.family),
        os_version=ua.os.version_string or None,
        device_type=get_device_type(user_agent_string or "", ua.is_mobile, ua.is_tablet),
    )
