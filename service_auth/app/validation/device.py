"""
Device classification from client hints.
"""

import re
from typing import Optional

from .models import DeviceClass

_MOBILE_MARKERS = re.compile(r"iPhone|iPad|Android|Mobile/|\bMobile\b", re.IGNORECASE)
_EXTENSION_HOST_MARKERS = re.compile(r"Shopify POS/|ExtensibilityHost|ShopifyMobile", re.IGNORECASE)


def classify_device(user_agent: Optional[str]) -> DeviceClass:
    """Map a user agent to the device class used for skew tolerance.

    Extension hosts running on handheld devices drift the most, so they
    get their own class; any other handheld is ``MOBILE``.
    """
    if not user_agent:
        return DeviceClass.DESKTOP
    if _EXTENSION_HOST_MARKERS.search(user_agent):
        return DeviceClass.MOBILE_EXTENSION
    if _MOBILE_MARKERS.search(user_agent):
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP
