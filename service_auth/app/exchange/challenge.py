"""
Edge proxy challenge detection and request header profiles.
"""

import re
from typing import Dict, List, Mapping, Optional

from ..validation.models import ChallengeType

# Base-delay multipliers per challenge type; captchas clear slowest.
CHALLENGE_DELAY_MULTIPLIERS = {
    ChallengeType.BROWSER_CHECK: 1.0,
    ChallengeType.JS_CHALLENGE: 1.0,
    ChallengeType.CAPTCHA: 2.5,
    ChallengeType.RATE_LIMIT: 0.75,
    ChallengeType.BOT_FIGHT: 1.75,
    ChallengeType.UNKNOWN: 1.0,
}

CHALLENGE_GROWTH = 1.5

# Interstitials are served with these statuses; anything else is the origin talking.
CHALLENGE_STATUSES = frozenset({403, 503})

# Firewall rule blocks; no amount of waiting turns these into a token.
TERMINAL_CHALLENGES = frozenset({ChallengeType.WAF_BLOCK})

# Most severe first: a block page may also carry the generic interstitial text.
_MARKERS = (
    (ChallengeType.WAF_BLOCK, re.compile(r"\byou have been blocked\b|\berror 1020\b")),
    (ChallengeType.BOT_FIGHT, re.compile(r"\bbot fight mode\b")),
    (ChallengeType.CAPTCHA, re.compile(r"\bh?captcha\b|\bturnstile\b|\bhuman verification\b")),
    (ChallengeType.RATE_LIMIT, re.compile(r"\berror 1015\b|\byou are being rate limited\b")),
    (ChallengeType.JS_CHALLENGE, re.compile(
        r"cf-chl-opt|\bchallenge-platform\b|cf_chl_\w+|\benable javascript and cookies\b"
    )),
    (ChallengeType.BROWSER_CHECK, re.compile(
        r"\bchecking your browser\b|\bjust a moment\.\.\.|\bverifying (?:you are human|your connection)\b"
        r"|\bplease wait while we verify\b|\bddos protection\b"
    )),
)

# Challenge pages embed these even when a CDN in front strips the proxy headers.
_PROXY_MARKUP = re.compile(r"/cdn-cgi/challenge-platform/|cf-chl-opt|cf_chl_\w+")

CONFIGURATION_ERROR_MARKERS = ("client_secret", "client_id", "invalid_client", "api key", "shared secret")


def _has_proxy_evidence(body: str, headers: Mapping[str, str]) -> bool:
    server = (headers.get("server") or "").lower()
    if "cloudflare" in server or headers.get("cf-ray") or headers.get("cf-mitigated"):
        return True
    return bool(_PROXY_MARKUP.search(body))


def detect_challenge(status_code: int, body: str, headers: Mapping[str, str]) -> Optional[ChallengeType]:
    """Return the challenge type when a response is an edge proxy interstitial.

    Origin errors relayed through the proxy carry the same proxy headers, so
    a challenge also needs an interstitial status and a known challenge phrase.
    """
    if status_code not in CHALLENGE_STATUSES:
        return None
    text = (body or "").lower()
    if not _has_proxy_evidence(text, headers):
        return None

    for challenge_type, pattern in _MARKERS:
        if pattern.search(text):
            return challenge_type

    if (headers.get("cf-mitigated") or "").lower() == "challenge":
        return ChallengeType.UNKNOWN
    return None


def is_configuration_error(body: str) -> bool:
    """True when the upstream rejected our app credentials."""
    text = (body or "").lower()
    return any(marker in text for marker in CONFIGURATION_ERROR_MARKERS)


class HeaderProfiles:
    """Rotating sets of request headers.

    Every profile identifies this client truthfully; profiles only differ
    in content negotiation and connection handling, which is what edge
    proxies tend to score on.
    """

    def __init__(self, user_agent: str, extra_profiles: Optional[List[Dict[str, str]]] = None):
        base = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        variants = [
            {},
            {"Accept-Language": "en-US,en;q=0.9", "Cache-Control": "no-cache"},
            {"Accept": "application/json, text/plain;q=0.5", "Connection": "close"},
            {"Accept-Encoding": "identity", "Pragma": "no-cache"},
        ] + list(extra_profiles or [])
        self._profiles = [{**base, **variant} for variant in variants]

    def __len__(self) -> int:
        return len(self._profiles)

    def for_index(self, index: int, tenant_origin: str, attempt: int) -> Dict[str, str]:
        headers = dict(self._profiles[index % len(self._profiles)])
        headers["Origin"] = f"https://{tenant_origin}"
        headers["X-Retry-Attempt"] = str(attempt)
        return headers
