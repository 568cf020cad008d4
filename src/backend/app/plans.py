from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class PlanLimits:
    ad_accounts: int
    pages: int
    team_members: int
    facebook_accounts: int
    api_account_cap: int
    lite_mode_threshold: int
    ai_generations: int
    ai_access: bool = True


PLAN_ORDER: List[str] = ["FREE", "PLUS", "PRO"]

PLAN_LIMITS: Dict[str, PlanLimits] = {
    "FREE": PlanLimits(ad_accounts=5, pages=3, team_members=2, facebook_accounts=2, api_account_cap=5, lite_mode_threshold=5, ai_generations=100),
    "PLUS": PlanLimits(ad_accounts=15, pages=10, team_members=5, facebook_accounts=5, api_account_cap=15, lite_mode_threshold=15, ai_generations=500),
    "PRO": PlanLimits(ad_accounts=30, pages=25, team_members=10, facebook_accounts=10, api_account_cap=30, lite_mode_threshold=30, ai_generations=2000),
}


def get_plan_limits(plan: str) -> PlanLimits:
    return PLAN_LIMITS.get(str(plan or "").upper(), PLAN_LIMITS["FREE"])


def get_ad_account_limit(plan: str) -> int:
    return get_plan_limits(plan).ad_accounts


def get_page_limit(plan: str) -> int:
    return get_plan_limits(plan).pages


def get_team_member_limit(plan: str) -> int:
    return get_plan_limits(plan).team_members


def get_facebook_account_limit(plan: str) -> int:
    return get_plan_limits(plan).facebook_accounts


def get_api_account_cap(plan: str) -> int:
    return get_plan_limits(plan).api_account_cap


def get_lite_mode_threshold(plan: str) -> int:
    return get_plan_limits(plan).lite_mode_threshold


def can_upgrade_to(current_plan: str, target_plan: str) -> bool:
    cur = str(current_plan or "").upper()
    tgt = str(target_plan or "").upper()
    cur_idx = PLAN_ORDER.index(cur) if cur in PLAN_ORDER else -1
    tgt_idx = PLAN_ORDER.index(tgt) if tgt in PLAN_ORDER else -1
    return tgt_idx > cur_idx


# More accounts means smaller chunks and longer pauses so a single request
# cannot burn through the per-app Graph quota.
def dynamic_chunk_size(account_count: int) -> int:
    if account_count > 1000:
        return 2
    if account_count > 500:
        return 3
    if account_count > 100:
        return 4
    if account_count > 50:
        return 5
    if account_count > 20:
        return 8
    return 10


def dynamic_chunk_delay_ms(account_count: int) -> int:
    if account_count > 1000:
        return 400
    if account_count > 500:
        return 300
    if account_count > 100:
        return 250
    if account_count > 50:
        return 200
    if account_count > 20:
        return 150
    return 100
