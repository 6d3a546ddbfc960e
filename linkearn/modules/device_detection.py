"""
Device Detection Module
Classifies visitor user agents into the device/browser buckets stored on visits
"""

from typing import Dict
from user_agents import parse

DEVICE_MOBILE = 'mobile'
DEVICE_TABLET = 'tablet'
DEVICE_DESKTOP = 'desktop'
DEVICE_BOT = 'bot'
DEVICE_UNKNOWN = 'unknown'

KNOWN_BROWSERS = ('Firefox', 'Edge', 'Chrome', 'Safari', 'Opera')


def detect_device(user_agent: str) -> str:
    """Detect the device bucket: mobile, tablet, desktop, bot or unknown"""
    if not user_agent:
        return DEVICE_UNKNOWN

    ua = parse(user_agent)

    if ua.is_bot:
        return DEVICE_BOT
    if ua.is_tablet:
        return DEVICE_TABLET
    if ua.is_mobile:
        return DEVICE_MOBILE
    return DEVICE_DESKTOP


def detect_browser(user_agent: str) -> str:
    """Detect the browser family, collapsed to a short list of names"""
    if not user_agent:
        return 'unknown'

    family = parse(user_agent).browser.family or ''

    # Mobile variants ("Chrome Mobile", "Mobile Safari", "Firefox iOS") fold into their base family
    for name in KNOWN_BROWSERS:
        if name.lower() in family.lower():
            return name

    return 'Other'


def classify_user_agent(user_agent: str) -> Dict[str, str]:
    return {
        'device': detect_device(user_agent),
        'browser': detect_browser(user_agent),
    }
