"""Meta API quota tuning.

One knob, ``META_QUOTA_SCALE`` (200 | 500 | 1000 users), selects how long team
and list data may be served from cache and how hard the fan-out paths throttle
themselves between ad-account chunks.
"""
import os
from typing import Dict

SCALES = ("200", "500", "1000")

# Hard cap on ad accounts in a single list request, regardless of plan
MAX_ACCOUNTS_PER_REQUEST = 100

# Stale window for SWR-cached list endpoints (campaigns, ad sets, ads)
SWR_STALE_TTL = 3600

RETRY_INITIAL_MS = 2500
RETRY_MAX_MS = 15000
RETRY_MULTIPLIER = 2


def scale() -> str:
    value = os.getenv("META_QUOTA_SCALE", "500").strip()
    return value if value in SCALES else "500"


def _by_scale(small: int, medium: int, large: int) -> int:
    s = scale()
    if s == "1000":
        return large
    if s == "500":
        return medium
    return small


def cache_ttl() -> Dict[str, int]:
    """TTL tiers in seconds."""
    return {
        # team/config, team/ad-accounts: accounts, pages, businesses
        "TEAM": _by_scale(7200, 10800, 14400),
        # campaigns, adsets, ads
        "LISTS": _by_scale(300, 600, 900),
        # page names, profile pictures
        "PROFILE": _by_scale(3600, 7200, 10800),
        "DASHBOARD": _by_scale(600, 900, 900),
    }


def resource_ttl(resource: str) -> int:
    tiers = cache_ttl()
    mapping = {
        "CAMPAIGNS_INSIGHTS": tiers["LISTS"],
        "CAMPAIGNS_LIST": tiers["LISTS"],
        "ADSETS_LIST": tiers["LISTS"],
        "ADS_LIST": tiers["LISTS"],
        "PAGE_NAMES": tiers["PROFILE"],
        "AD_ACCOUNTS": tiers["TEAM"],
        "TEAM_CONFIG": tiers["TEAM"],
        "DASHBOARD_STATS": tiers["DASHBOARD"],
        "TEAM_FACEBOOK_PICTURES": tiers["PROFILE"],
        "USER_PREFERENCES": 86400,
    }
    return mapping[resource]


def chunk_delay_ms() -> int:
    return _by_scale(100, 150, 150)



def retry_delays_ms(attempts: int):
    """Backoff schedule for 429 responses, capped at RETRY_MAX_MS."""
    delay = RETRY_INITIAL_MS
    out = []
    for _ in range(max(0, attempts)):
        out.append(min(delay, RETRY_MAX_MS))
        delay *= RETRY_MULTIPLIER
    return out
