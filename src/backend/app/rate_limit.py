import time
from typing import Dict, Tuple

from fastapi import HTTPException

from .cache import cache_incr

PRESETS: Dict[str, Tuple[int, int]] = {
    "standard": (60, 30),
    "strict": (10, 5),
}


def check_and_increment(user_id: str, key: str, max_per_minute: int = 60, burst: int = 30) -> Tuple[bool, int]:
    """Minute-bucket limiter with a small burst allowance on top of the per-minute cap."""
    now = int(time.time() // 60)
    bucket = f"rl:{user_id}:{key}:{now}"
    count = cache_incr(bucket, 1, expire_seconds=65)
    if count > max_per_minute + burst:
        return False, count
    return True, count


def enforce(user_id: str, key: str, preset: str = "standard") -> None:
    limit, burst = PRESETS.get(preset, PRESETS["standard"])
    ok, _ = check_and_increment(user_id, key, max_per_minute=limit, burst=burst)
    if not ok:
        raise HTTPException(status_code=429, detail="rate_limited")