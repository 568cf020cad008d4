"""Team-wide business, ad account and page discovery.

Every Facebook connection on the team is walked in priority order and the
results merged first-seen-wins by id, so a page or account reachable through
two teammates is reported once, attributed to the first connection that
surfaced it.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .integrations.meta_graph import fetch_paginated, fetch_paginated_with_error, is_permission_error
from .team import TeamConnection, get_subscription_pool, get_team_facebook_connections, normalize_ad_account_id

logger = logging.getLogger(__name__)

BUSINESS_EDGE_WORKERS = 4

# Meta reports these in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {"CLP", "COP", "CRC", "HUF", "ISK", "IDR", "JPY", "KRW", "PYG", "TWD", "VND"}

PAGE_FIELDS = "id,name,username,picture,access_token,business"
AD_ACCOUNT_FIELDS = (
    "id,name,account_id,currency,account_status,disable_reason,spend_cap,amount_spent,"
    "timezone_name,timezone_offset_hours_utc,business_country_code,"
    "business{id,name,profile_picture_uri},owner{id,name},funding_source_details"
)
BIZ_AD_ACCOUNT_FIELDS = "id,name,account_id,currency,account_status,business,owner"
BIZ_PAGE_FIELDS = "id,name,picture,is_published,access_token"
BIZ_FIELDS = "id,name,profile_picture_uri,verification_status,permitted_roles,permitted_tasks"


@dataclass
class TeamPagesResult:
    pages: List[Dict[str, Any]] = field(default_factory=list)
    hint: Optional[str] = None  # no_team_members | fetch_failed


def from_basic_units(value: Any, currency: Optional[str]) -> float:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    if str(currency or "USD").upper() in ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / 100


def _source(conn: TeamConnection, team_member_only: bool = True) -> Dict[str, Any]:
    member_id = conn.id if (conn.source == "teamMember" or not team_member_only) else ""
    return {"team_member_id": member_id, "facebook_name": conn.facebook_name, "facebook_user_id": conn.facebook_user_id}


def _page_business_name(page: Dict[str, Any], business_map: Dict[str, str], page_to_business: Dict[str, str]) -> str:
    biz = page.get("business") or {}
    name = biz.get("name")
    if not name and biz.get("id"):
        name = business_map.get(biz["id"])
    if not name:
        name = page_to_business.get(page.get("id"))
    if not name:
        name = f"(Biz ID: {biz['id']})" if biz.get("id") else "Personal Page"
    return name


def _fetch_me_accounts(token: str) -> List[Dict[str, Any]]:
    """me/accounts; a permission error means no pages for this login."""
    pages, err = fetch_paginated_with_error("me/accounts", token, {"fields": PAGE_FIELDS, "limit": 500})
    if err is not None and is_permission_error(err):
        logger.warning("team_pages_permission_error", extra={"code": err.get("code")})
        return []
    return pages


def get_team_pages_for_user(db: Session, user_id: str, email: Optional[str] = None) -> TeamPagesResult:
    connections = get_team_facebook_connections(db, user_id, email)
    if not connections:
        return TeamPagesResult(pages=[], hint="no_team_members")

    pages: List[Dict[str, Any]] = []
    seen: set = set()
    business_map: Dict[str, str] = {}
    page_to_business: Dict[str, str] = {}

    for conn in connections:
        token = conn.access_token
        try:
            businesses = fetch_paginated(
                "me/businesses",
                token,
                {
                    "fields": "id,name,client_pages{id,name,picture,access_token,business},owned_pages{id,name,picture,access_token,business}",
                    "limit": 500,
                },
            )
            for b in businesses:
                business_map[b.get("id")] = b.get("name")
                biz_pages = list(((b.get("client_pages") or {}).get("data")) or []) + list(((b.get("owned_pages") or {}).get("data")) or [])
                for p in biz_pages:
                    page_to_business[p.get("id")] = b.get("name")
                    # business edges only count when they hand back a usable page token
                    if p.get("id") not in seen and p.get("access_token"):
                        seen.add(p.get("id"))
                        pages.append({**p, "business_name": b.get("name"), "_source": _source(conn)})

            for page in _fetch_me_accounts(token):
                if page.get("id") in seen:
                    continue
                seen.add(page.get("id"))
                pages.append({**page, "business_name": _page_business_name(page, business_map, page_to_business), "_source": _source(conn)})
        except Exception as exc:
            logger.exception("team_pages_connection_failed", extra={"facebook_user_id": conn.facebook_user_id}, exc_info=exc)

    if not pages:
        return TeamPagesResult(pages=[], hint="fetch_failed")
    return TeamPagesResult(pages=pages)


def get_team_ad_accounts(db: Session, user_id: str, email: Optional[str] = None, mode: Optional[str] = None) -> Dict[str, Any]:
    connections = get_team_facebook_connections(db, user_id, email)
    if not connections:
        return {"accounts": [], "team_members_count": 0}

    accounts: List[Dict[str, Any]] = []
    seen: set = set()
    business_map: Dict[str, str] = {}
    biz_id_to_profile: Dict[str, str] = {}
    biz_name_to_profile: Dict[str, str] = {}
    account_to_business: Dict[str, Dict[str, Any]] = {}

    # Phase A: businesses and their owned/client ad accounts
    for conn in connections:
        if not conn.access_token:
            continue
        try:
            businesses = fetch_paginated("me/businesses", conn.access_token, {"fields": "id,name,profile_picture_uri", "limit": 100})
            for b in businesses:
                bid, bname, picture = b.get("id"), b.get("name"), b.get("profile_picture_uri")
                business_map[bid] = bname
                if picture:
                    biz_id_to_profile[bid] = picture
                    biz_name_to_profile[bname] = picture
                owned = fetch_paginated(f"{bid}/owned_ad_accounts", conn.access_token, {"fields": BIZ_AD_ACCOUNT_FIELDS, "limit": 100})
                client = fetch_paginated(f"{bid}/client_ad_accounts", conn.access_token, {"fields": BIZ_AD_ACCOUNT_FIELDS, "limit": 100})
                for acc in owned + client:
                    info = {"name": bname, "profile_picture_uri": picture}
                    account_to_business[acc.get("id")] = info
                    if acc.get("account_id"):
                        account_to_business[acc["account_id"]] = info
                    if acc.get("id") not in seen:
                        seen.add(acc.get("id"))
                        accounts.append({**acc, "business_name": bname, "business_profile_picture_uri": picture, "_source": _source(conn)})
        except Exception as exc:
            logger.exception("team_ad_accounts_discovery_failed", extra={"facebook_user_id": conn.facebook_user_id}, exc_info=exc)

    # Phase B: accounts the login reaches directly
    for conn in connections:
        if not conn.access_token:
            continue
        try:
            direct = fetch_paginated(
                "me/adaccounts",
                conn.access_token,
                {
                    "fields": AD_ACCOUNT_FIELDS + ",ads.filtering([{'field':'effective_status','operator':'IN','value':['ACTIVE']}]).limit(0).summary(true)",
                    "limit": 500,
                },
            )
            for acc in direct:
                if acc.get("id") in seen:
                    continue
                seen.add(acc.get("id"))
                biz = acc.get("business") or {}
                name = biz.get("name") or (acc.get("owner") or {}).get("name")
                picture = biz.get("profile_picture_uri")
                if not name and biz.get("id"):
                    name = business_map.get(biz["id"])
                if not name:
                    shared = account_to_business.get(acc.get("id")) or account_to_business.get(acc.get("account_id"))
                    if shared:
                        name = shared["name"]
                        picture = shared.get("profile_picture_uri")
                if not name:
                    name = "Personal Account"
                if not picture and biz.get("id"):
                    picture = biz_id_to_profile.get(biz["id"])
                if not picture:
                    picture = biz_name_to_profile.get(name)
                accounts.append({**acc, "business_name": name, "business_profile_picture_uri": picture, "_source": _source(conn)})
        except Exception as exc:
            logger.exception("team_ad_accounts_direct_failed", extra={"facebook_user_id": conn.facebook_user_id}, exc_info=exc)

    if mode != "business":
        pool = get_subscription_pool(db, user_id, email)
        if pool.ad_account_ids:
            allowed = {normalize_ad_account_id(i) for i in pool.ad_account_ids}
            accounts = [a for a in accounts if normalize_ad_account_id(a.get("id", "")) in allowed]

    return {"accounts": accounts, "team_members_count": len(connections)}


def _business_edges(bid: str, token: str) -> Dict[str, List[Dict[str, Any]]]:
    return {
        "client_ads": fetch_paginated(f"{bid}/client_ad_accounts", token, {"fields": BIZ_AD_ACCOUNT_FIELDS, "limit": 500}),
        "owned_ads": fetch_paginated(f"{bid}/owned_ad_accounts", token, {"fields": BIZ_AD_ACCOUNT_FIELDS, "limit": 500}),
        "client_pages": fetch_paginated(f"{bid}/client_pages", token, {"fields": BIZ_PAGE_FIELDS, "limit": 500}),
        "owned_pages": fetch_paginated(f"{bid}/owned_pages", token, {"fields": BIZ_PAGE_FIELDS, "limit": 500}),
    }


def empty_team_config() -> Dict[str, Any]:
    return {
        "accounts": [],
        "pages": [],
        "business_pages": [],
        "business_accounts": [],
        "businesses": [],
        "all_business_pages": [],
        "all_business_accounts_unfiltered": [],
        "subscription_selected_page_ids": [],
        "subscription_selected_account_ids": [],
    }


def get_team_config(db: Session, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
    """Accounts, pages and businesses for the whole team in one pass.

    Unfiltered business lists feed the by-business management views; the
    filtered lists only hold what the host's subscription has selected and
    are empty when nothing is selected.
    """
    connections = get_team_facebook_connections(db, user_id, email)
    if not connections:
        return empty_team_config()

    accounts: List[Dict[str, Any]] = []
    pages: List[Dict[str, Any]] = []
    business_accounts: List[Dict[str, Any]] = []
    business_pages: List[Dict[str, Any]] = []
    seen_pages: set = set()
    seen_biz_pages: set = set()
    seen_biz_accounts: set = set()
    businesses: Dict[str, Dict[str, Any]] = {}
    business_map: Dict[str, str] = {}
    biz_id_to_profile: Dict[str, str] = {}
    account_to_business: Dict[str, Dict[str, Any]] = {}
    page_to_business: Dict[str, str] = {}

    now = time.time()
    for conn in connections:
        if conn.expires_at and conn.expires_at < now:
            logger.warning("team_config_token_expired", extra={"facebook_user_id": conn.facebook_user_id})
            continue
        token = conn.access_token
        src = _source(conn, team_member_only=False)

        with ThreadPoolExecutor(max_workers=3) as pool:
            f_biz = pool.submit(fetch_paginated, "me/businesses", token, {"fields": BIZ_FIELDS, "limit": 500})
            f_accounts = pool.submit(fetch_paginated, "me/adaccounts", token, {"fields": AD_ACCOUNT_FIELDS, "limit": 500})
            f_pages = pool.submit(fetch_paginated, "me/accounts", token, {"fields": PAGE_FIELDS, "limit": 500})
            biz_list, direct_accounts, direct_pages = f_biz.result(), f_accounts.result(), f_pages.result()

        with ThreadPoolExecutor(max_workers=BUSINESS_EDGE_WORKERS) as pool:
            edges = list(pool.map(lambda b: _business_edges(b.get("id"), token), biz_list))

        for b, edge in zip(biz_list, edges):
            bid, bname, picture = b.get("id"), b.get("name"), b.get("profile_picture_uri")
            business_map[bid] = bname
            if picture:
                biz_id_to_profile[bid] = picture
            businesses.setdefault(bid, {**b, "_source": src})
            for acc in edge["client_ads"] + edge["owned_ads"]:
                info = {"name": bname, "profile_picture_uri": picture}
                account_to_business[acc.get("id")] = info
                if acc.get("account_id"):
                    account_to_business[acc["account_id"]] = info
                if acc.get("id") not in seen_biz_accounts:
                    seen_biz_accounts.add(acc.get("id"))
                    business_accounts.append({**acc, "business_name": bname, "_source": src})
            for p in edge["client_pages"] + edge["owned_pages"]:
                page_to_business[p.get("id")] = bname
                if p.get("id") not in seen_biz_pages:
                    seen_biz_pages.add(p.get("id"))
                    business_pages.append({**p, "business_name": bname, "_source": src})

        for acc in direct_accounts:
            currency = acc.get("currency") or "USD"
            biz = acc.get("business") or {}
            name = biz.get("name") or (acc.get("owner") or {}).get("name")
            if not name and biz.get("id"):
                name = business_map.get(biz["id"])
            if not name:
                shared = account_to_business.get(acc.get("id")) or account_to_business.get(acc.get("account_id"))
                name = (shared or {}).get("name") or "Personal Account"
            picture = biz.get("profile_picture_uri")
            if not picture and biz.get("id"):
                picture = biz_id_to_profile.get(biz["id"])
            accounts.append({
                **acc,
                "business_name": name,
                "business_profile_picture_uri": picture,
                "spend_cap": from_basic_units(acc.get("spend_cap"), currency),
                "amount_spent": from_basic_units(acc.get("amount_spent"), currency),
                "_source": src,
            })

        for page in direct_pages:
            if page.get("id") in seen_pages:
                continue
            seen_pages.add(page.get("id"))
            pages.append({**page, "business_name": _page_business_name(page, business_map, page_to_business), "_source": src})

    # page tokens from me/accounts mark business pages as connected
    index = {p.get("id"): i for i, p in enumerate(business_pages)}
    for page in pages:
        i = index.get(page.get("id"))
        if i is not None and page.get("access_token"):
            merged = dict(business_pages[i])
            merged["access_token"] = page["access_token"]
            merged["picture"] = page.get("picture") or merged.get("picture")
            business_pages[i] = merged
    for page in pages:
        if page.get("id") not in index:
            index[page.get("id")] = len(business_pages)
            business_pages.append(page)

    for acc in accounts:
        if acc.get("id") not in seen_biz_accounts:
            seen_biz_accounts.add(acc.get("id"))
            business_accounts.append({**acc, "business_name": acc.get("business_name") or "Personal Account"})
    full_by_id: Dict[str, Dict[str, Any]] = {}
    for acc in accounts:
        full_by_id[acc.get("id")] = acc
        if acc.get("account_id"):
            full_by_id[acc["account_id"]] = acc
    for i, acc in enumerate(business_accounts):
        full = full_by_id.get(acc.get("id")) or full_by_id.get(acc.get("account_id"))
        if full:
            business_accounts[i] = {**acc, **full, "business_name": acc.get("business_name"), "has_direct_access": True}
        else:
            business_accounts[i] = {**acc, "has_direct_access": False}

    sub_pool = get_subscription_pool(db, user_id, email)
    selected_pages = list(dict.fromkeys(sub_pool.page_ids))
    selected_accounts = list(dict.fromkeys(normalize_ad_account_id(i) for i in sub_pool.ad_account_ids))
    selected_pages_set, selected_accounts_set = set(selected_pages), set(selected_accounts)

    filtered_accounts = [a for a in accounts if normalize_ad_account_id(a.get("id", "")) in selected_accounts_set]
    filtered_pages: List[Dict[str, Any]] = []
    if selected_pages_set:
        by_id: Dict[str, Dict[str, Any]] = {}
        for p in get_team_pages_for_user(db, user_id, email).pages:
            if p.get("id") in selected_pages_set:
                by_id[p["id"]] = p
        for p in pages:
            if p.get("id") in selected_pages_set and p.get("id") not in by_id:
                by_id[p["id"]] = p
        filtered_pages = list(by_id.values())

    return {
        "accounts": filtered_accounts,
        "pages": filtered_pages,
        "business_pages": [p for p in business_pages if p.get("id") in selected_pages_set],
        "business_accounts": [a for a in business_accounts if a.get("id") in selected_accounts_set],
        "businesses": list(businesses.values()),
        "all_business_pages": business_pages,
        "all_business_accounts_unfiltered": business_accounts,
        "subscription_selected_page_ids": selected_pages,
        "subscription_selected_account_ids": selected_accounts,
    }
