import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException
from sqlalchemy.orm import Session

from . import plans, quota
from .cache import clear_swr_entry, cache_del, generate_cache_key, with_cache, with_cache_swr
from .integrations import meta_graph
from .models import User
from .team import get_subscription_pool, normalize_ad_account_id
from .tokens import TokenInfo, get_user_tokens_only, get_valid_token_for_ad_account

logger = logging.getLogger(__name__)

ALIVE_STATUSES = [
    "ACTIVE",
    "PAUSED",
    "IN_PROCESS",
    "WITH_ISSUES",
    "PENDING_REVIEW",
    "DISAPPROVED",
    "PREAPPROVED",
    "PENDING_BILLING_INFO",
    "CAMPAIGN_PAUSED",
    "ADSET_PAUSED",
    "DISABLED",
]

MESSAGING_STARTED = "onsite_conversion.messaging_conversation_started_7d"
MESSAGING_FIRST_REPLY = "onsite_conversion.messaging_first_reply"
POST_ENGAGEMENT = "post_engagement"

PAGE_IDS_PER_REQUEST = 50
ADS_PAGE_RETRIES = 3
ADS_PAGE_RETRY_DELAY_MS = 800

CACHE_VERSIONS = {"campaigns": "v3", "adsets": "v2", "ads": "v2"}


class AccountError(Exception):
    """Per-account failure whose message is reported to the caller as is."""


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def parse_ad_account_ids(raw: Optional[str]) -> List[str]:
    return [normalize_ad_account_id(p.strip()) for p in str(raw or "").split(",") if p.strip()]


def _parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def insights_time_range(date_from: Optional[str], date_to: Optional[str], today: Optional[date] = None) -> str:
    """Insights modifier for the given range; Meta rejects future ranges, so fall back to last_30d."""
    since, until = _parse_day(date_from), _parse_day(date_to)
    current = today or date.today()
    if since and until and until <= current and since <= until:
        return "time_range({'since':'%s','until':'%s'})" % (since.isoformat(), until.isoformat())
    return "date_preset(last_30d)"


def status_filter(status: Optional[str]) -> List[str]:
    if status == "deleted":
        return ["DELETED"]
    if status in ("archived", "completed"):
        return ["ARCHIVED"]
    return list(ALIVE_STATUSES)


def _filtering(status: Optional[str]) -> str:
    return json.dumps([{"field": "effective_status", "operator": "IN", "value": status_filter(status)}])


def fan_out(
    ad_account_ids: List[str],
    chunk_size: int,
    chunk_delay_ms: int,
    worker: Callable[[str], List[Any]],
) -> Tuple[List[Any], List[str]]:
    """Run ``worker`` per account, a chunk at a time.

    Calls inside a chunk run concurrently; chunks run one after another with
    ``chunk_delay_ms`` between them. Items are merged in completion order.
    """
    items: List[Any] = []
    errors: List[str] = []
    size = max(1, int(chunk_size))
    for start in range(0, len(ad_account_ids), size):
        chunk = ad_account_ids[start:start + size]
        with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
            futures = {pool.submit(worker, account_id): account_id for account_id in chunk}
            for fut in as_completed(futures):
                account_id = futures[fut]
                try:
                    items.extend(fut.result() or [])
                except AccountError as exc:
                    errors.append(str(exc))
                except Exception as exc:
                    logger.warning("fan_out_account_failed", extra={"ad_account_id": account_id, "error": str(exc)[:200]})
                    errors.append(f"Error for account {account_id}: {exc}")
        if start + size < len(ad_account_ids):
            _sleep(chunk_delay_ms / 1000.0)
    return items, errors


def _action_value(actions: List[Dict[str, Any]], action_type: str) -> int:
    for a in actions or []:
        if a.get("action_type") == action_type:
            try:
                return int(float(a.get("value") or 0))
            except (TypeError, ValueError):
                return 0
    return 0


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _int(value: Any) -> int:
    return int(_num(value))


def _first_insight(node: Dict[str, Any]) -> Dict[str, Any]:
    data = (node.get("insights") or {}).get("data") or []
    return data[0] if data else {}


def _account_currency(account_id: str, token: str) -> str:
    try:
        return meta_graph.graph_get(account_id, token, {"fields": "currency"}).get("currency") or "USD"
    except (meta_graph.GraphAPIError, httpx.HTTPError):
        return "USD"


# Campaigns ---------------------------------------------------------------------
def format_campaign(c: Dict[str, Any], account_id: str, currency: str) -> Dict[str, Any]:
    ins = _first_insight(c)
    actions = ins.get("actions") or []
    messages = _action_value(actions, MESSAGING_STARTED)
    spend = _num(ins.get("spend"))
    cost_per_result = spend / messages if messages > 0 else 0
    return {
        "id": c.get("id"),
        "name": c.get("name"),
        "status": c.get("status"),
        "effective_status": c.get("effective_status"),
        "configured_status": c.get("configured_status"),
        "objective": c.get("objective"),
        "ad_sets": [
            {
                "effective_status": a.get("effective_status"),
                "ads": [{"effective_status": ad.get("effective_status")} for ad in ((a.get("ads") or {}).get("data") or [])],
            }
            for a in ((c.get("adsets") or {}).get("data") or [])
        ],
        "daily_budget": _num(c.get("daily_budget")) / 100,
        "lifetime_budget": _num(c.get("lifetime_budget")) / 100,
        "spend_cap": _num(c.get("spend_cap")) / 100,
        "issues_info": c.get("issues_info") or [],
        "created_at": c.get("created_time"),
        "metrics": {
            "spend": spend,
            "messages": messages,
            "cost_per_message": cost_per_result,
            "results": messages,
            "cost_per_result": cost_per_result,
            "budget": _num(c.get("daily_budget") or c.get("lifetime_budget")) / 100,
            "reach": _int(ins.get("reach")),
            "impressions": _int(ins.get("impressions")),
            "post_engagements": _action_value(actions, POST_ENGAGEMENT),
            "clicks": _int(ins.get("clicks")),
            "messaging_contacts": _action_value(actions, MESSAGING_FIRST_REPLY),
            "amount_spent": spend,
        },
        "ads_count": {"total": 0, "active": 0},
        "ad_account_id": account_id,
        "currency": currency,
    }


def fetch_campaigns(
    ad_account_ids: List[str],
    tokens: List[TokenInfo],
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    mode: Optional[str] = None,
    chunk_size: int = 10,
    chunk_delay_ms: int = 100,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    lite = mode == "lite"
    time_range = "date_preset(last_30d)" if lite else insights_time_range(date_from, date_to)
    filtering = _filtering(status)

    def worker(account_id: str) -> List[Dict[str, Any]]:
        token = get_valid_token_for_ad_account(account_id, tokens)
        if not token:
            raise AccountError(f"No valid access token found for account {account_id}")
        if lite:
            rows = meta_graph.fetch_paginated(
                f"{account_id}/campaigns",
                token,
                {"fields": "id,name,status,effective_status,configured_status,created_time", "limit": 200, "filtering": filtering},
            )
            return [
                {
                    "id": c.get("id"),
                    "name": c.get("name"),
                    "status": c.get("status"),
                    "effective_status": c.get("effective_status"),
                    "created_at": c.get("created_time"),
                    "metrics": {"spend": 0, "messages": 0, "results": 0, "cost_per_result": 0},
                    "ad_account_id": account_id,
                    "currency": "USD",
                }
                for c in rows
            ]
        currency = _account_currency(account_id, token)
        fields = (
            "id,name,status,effective_status,configured_status,objective,daily_budget,lifetime_budget,"
            "spend_cap,issues_info,adsets{effective_status,ads{effective_status}},created_time,"
            f"insights.{time_range}{{spend,actions,cost_per_action_type,reach,impressions,clicks}}"
        )
        rows = meta_graph.fetch_all_pages_strict(f"{account_id}/campaigns", token, {"fields": fields, "limit": 200, "filtering": filtering})
        logger.info("campaigns_fetched", extra={"ad_account_id": account_id, "count": len(rows)})
        return [format_campaign(c, account_id, currency) for c in rows]

    campaigns, errors = fan_out(ad_account_ids, chunk_size, chunk_delay_ms, worker)
    campaigns.sort(key=lambda c: c.get("created_at") or "", reverse=True)
    return {"campaigns": campaigns, "errors": errors}


# Ad sets -----------------------------------------------------------------------
def format_adset(a: Dict[str, Any], account_id: str, currency: str) -> Dict[str, Any]:
    ins = _first_insight(a)
    spend = _num(ins.get("spend"))
    contacts = _action_value(ins.get("actions") or [], MESSAGING_STARTED)
    return {
        "id": a.get("id"),
        "name": a.get("name"),
        "status": a.get("status"),
        "ads": [{"effective_status": ad.get("effective_status")} for ad in ((a.get("ads") or {}).get("data") or [])],
        "effective_status": a.get("effective_status"),
        "configured_status": a.get("configured_status"),
        "issues_info": a.get("issues_info") or [],
        "campaign_id": a.get("campaign_id"),
        "daily_budget": _num(a.get("daily_budget")) / 100,
        "lifetime_budget": _num(a.get("lifetime_budget")) / 100,
        "optimization_goal": a.get("optimization_goal") or "-",
        "billing_event": a.get("billing_event") or "-",
        "bid_amount": _num(a.get("bid_amount")) / 100,
        "targeting": a.get("targeting"),
        "created_at": a.get("created_time"),
        "ad_account_id": account_id,
        "currency": currency,
        "metrics": {
            "spend": spend,
            "reach": _int(ins.get("reach")),
            "impressions": _int(ins.get("impressions")),
            "clicks": _int(ins.get("clicks")),
            "messaging_contacts": contacts,
            "results": contacts,
            "cost_per_result": spend / contacts if contacts > 0 else 0,
        },
    }


def fetch_adsets(
    ad_account_ids: List[str],
    tokens: List[TokenInfo],
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    status: Optional[str] = None,
    chunk_size: int = 10,
    chunk_delay_ms: int = 100,
) -> Dict[str, Any]:
    time_range = insights_time_range(date_from, date_to)
    filtering = _filtering(status)
    fields = (
        "id,name,status,effective_status,configured_status,issues_info,ads{effective_status},campaign_id,"
        "daily_budget,lifetime_budget,optimization_goal,billing_event,bid_amount,targeting,created_time,"
        f"insights.{time_range}{{spend,actions,reach,impressions,clicks}}"
    )

    def worker(account_id: str) -> List[Dict[str, Any]]:
        token = get_valid_token_for_ad_account(account_id, tokens)
        if not token:
            raise AccountError(f"No valid access token found for account {account_id}")
        currency = _account_currency(account_id, token)
        rows = meta_graph.fetch_paginated(f"{account_id}/adsets", token, {"fields": fields, "limit": 200, "filtering": filtering})
        return [format_adset(a, account_id, currency) for a in rows]

    adsets, errors = fan_out(ad_account_ids, chunk_size, chunk_delay_ms, worker)
    return {"adsets": adsets, "errors": errors}


# Ads ---------------------------------------------------------------------------
def extract_page_id(ad: Dict[str, Any]) -> Optional[str]:
    c = ad.get("creative")
    if not c:
        return None
    if c.get("actor_id"):
        return str(c["actor_id"])
    story_id = c.get("object_story_id") or c.get("effective_object_story_id")
    if story_id:
        head = str(story_id).split("_")[0]
        if head:
            return head
    story = c.get("object_story_spec") or {}
    if story.get("page_id"):
        return str(story["page_id"])
    for key in ("link_data", "video_data", "photo_data"):
        sub = story.get(key) or {}
        if sub.get("page_id"):
            return str(sub["page_id"])
    return None


def creative_image_url(creative: Optional[Dict[str, Any]]) -> Optional[str]:
    if not creative:
        return None
    url = creative.get("thumbnail_url") or creative.get("image_url")
    feed = creative.get("asset_feed_spec") or {}
    if not url and feed:
        if feed.get("images"):
            url = feed["images"][0].get("url")
        elif feed.get("videos"):
            url = feed["videos"][0].get("thumbnail_url")
    story = creative.get("object_story_spec") or {}
    if not url and story:
        link = story.get("link_data") or {}
        if link.get("child_attachments"):
            url = link["child_attachments"][0].get("picture")
        elif link.get("picture"):
            url = link["picture"]
        elif (story.get("photo_data") or {}).get("url"):
            url = story["photo_data"]["url"]
        elif (story.get("video_data") or {}).get("image_url"):
            url = story["video_data"]["image_url"]
    return url


def _budget(ad: Dict[str, Any]) -> Dict[str, Any]:
    campaign = ad.get("campaign") or {}
    adset = ad.get("adset") or {}
    c_daily, c_life = _num(campaign.get("daily_budget")) / 100, _num(campaign.get("lifetime_budget")) / 100
    a_daily, a_life = _num(adset.get("daily_budget")) / 100, _num(adset.get("lifetime_budget")) / 100
    budget, source, kind = 0.0, "adset", "daily"
    # campaign budget optimisation overrides whatever the ad set says
    if c_daily > 0 or c_life > 0:
        budget, source, kind = (c_daily, "campaign", "daily") if c_daily > 0 else (c_life, "campaign", "lifetime")
    elif a_daily > 0 or a_life > 0:
        budget, source, kind = (a_daily, "adset", "daily") if a_daily > 0 else (a_life, "adset", "lifetime")
    return {
        "budget": budget,
        "budget_source": source,
        "budget_type": kind,
        "campaign_daily_budget": c_daily,
        "campaign_lifetime_budget": c_life,
        "adset_daily_budget": a_daily,
        "adset_lifetime_budget": a_life,
    }


def resolve_page_names(page_to_account: Dict[str, str], tokens: List[TokenInfo], force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
    """Names and usernames for creative pages, asked through the account that ran the ad."""
    if not page_to_account:
        return {}
    key = generate_cache_key("meta:pages", ",".join(sorted(page_to_account)))
    if force_refresh:
        cache_del(key)

    def _fetch() -> Dict[str, Dict[str, Any]]:
        info: Dict[str, Dict[str, Any]] = {}
        by_account: Dict[str, List[str]] = {}
        for page_id, account_id in page_to_account.items():
            by_account.setdefault(account_id, []).append(page_id)
        for account_id, ids in by_account.items():
            token = get_valid_token_for_ad_account(account_id, tokens)
            if not token:
                continue
            for i in range(0, len(ids), PAGE_IDS_PER_REQUEST):
                chunk = ids[i:i + PAGE_IDS_PER_REQUEST]
                try:
                    data = meta_graph.graph_get("", token, {"ids": ",".join(chunk), "fields": "name,username"})
                except (meta_graph.GraphAPIError, httpx.HTTPError) as exc:
                    logger.warning("ads_page_names_failed", extra={"ad_account_id": account_id, "error": str(exc)[:200]})
                    continue
                for page_id in chunk:
                    row = data.get(page_id)
                    if isinstance(row, dict) and not row.get("error") and row.get("name"):
                        info[page_id] = {"name": row["name"], "username": row.get("username")}
        return info

    try:
        return with_cache(key, quota.resource_ttl("PAGE_NAMES"), _fetch, name="page_names") or {}
    except Exception as exc:
        logger.warning("ads_page_names_cache_failed", extra={"error": str(exc)[:200]})
        return {}


def format_ad(ad: Dict[str, Any], page_info: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    creative = ad.get("creative") or {}
    page_id = extract_page_id(ad)
    info = page_info.get(page_id or "") or {}
    story_id = creative.get("object_story_id") or creative.get("effective_object_story_id")
    ins = _first_insight(ad)
    actions = ins.get("actions") or []
    spend = _num(ins.get("spend"))
    contacts = _action_value(actions, MESSAGING_STARTED)
    out = {
        "id": ad.get("id"),
        "name": ad.get("name"),
        "status": ad.get("status"),
        "effective_status": ad.get("effective_status"),
        "configured_status": ad.get("configured_status"),
        "issues_info": ad.get("issues_info") or [],
        "adset_id": ad.get("adset_id"),
        "campaign_id": ad.get("campaign_id"),
        "campaign_name": (ad.get("campaign") or {}).get("name"),
        "adset_name": (ad.get("adset") or {}).get("name"),
        "creative_id": creative.get("id") or "-",
        "creative_name": creative.get("name") or "-",
        "title": creative.get("title") or "-",
        "body": creative.get("body") or "-",
        "image_url": creative_image_url(ad.get("creative")),
        "targeting": (ad.get("adset") or {}).get("targeting"),
        "created_at": ad.get("created_time"),
        "ad_account_id": ad.get("ad_account_id"),
        "currency": ad.get("currency"),
        "page_id": page_id,
        "page_name": info.get("name") or (f"Page {page_id}" if page_id else None),
        "page_username": info.get("username"),
        "metrics": {
            "spend": spend,
            "reach": _int(ins.get("reach")),
            "impressions": _int(ins.get("impressions")),
            "clicks": _int(ins.get("clicks")),
            "messaging_contacts": contacts,
            "results": contacts,
            "cost_per_result": spend / contacts if contacts > 0 else 0,
            "post_engagements": _action_value(actions, POST_ENGAGEMENT),
            "amount_spent": spend,
        },
        "post_link": f"https://www.facebook.com/{story_id}" if story_id else None,
    }
    out.update(_budget(ad))
    return out


def fetch_ads(
    ad_account_ids: List[str],
    tokens: List[TokenInfo],
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    status: Optional[str] = None,
    force_refresh: bool = False,
    chunk_size: int = 10,
    chunk_delay_ms: int = 100,
) -> List[Dict[str, Any]]:
    time_range = insights_time_range(date_from, date_to)
    filtering = _filtering(status)
    fields = (
        "id,name,status,adset_id,campaign_id,adset{name,targeting,daily_budget,lifetime_budget},"
        "campaign{name,daily_budget,lifetime_budget},"
        "creative{id,name,title,body,image_url,thumbnail_url,object_story_spec,asset_feed_spec,"
        "effective_object_story_id,object_story_id,actor_id},"
        "effective_status,configured_status,issues_info,created_time,"
        f"insights.{time_range}{{spend,actions,reach,impressions,clicks}}"
    )

    def worker(account_id: str) -> List[Dict[str, Any]]:
        token = get_valid_token_for_ad_account(account_id, tokens)
        if not token:
            return []
        try:
            currency = meta_graph.graph_get(account_id, token, {"fields": "currency"}).get("currency") or "USD"
        except meta_graph.GraphAPIError as exc:
            logger.warning("ads_account_fetch_failed", extra={"ad_account_id": account_id, "status": exc.status_code})
            return []
        rows = meta_graph.fetch_all_pages_retrying(
            f"{account_id}/ads",
            token,
            {"fields": fields, "limit": 200, "filtering": filtering},
            attempts=ADS_PAGE_RETRIES,
            delay_ms=ADS_PAGE_RETRY_DELAY_MS,
        )
        return [{**ad, "ad_account_id": account_id, "currency": currency} for ad in rows]

    raw_ads, errors = fan_out(ad_account_ids, chunk_size, chunk_delay_ms, worker)
    for err in errors:
        logger.warning("ads_account_error", extra={"error": err[:200]})

    page_to_account: Dict[str, str] = {}
    for ad in raw_ads:
        pid = extract_page_id(ad)
        if pid and ad.get("ad_account_id") and pid not in page_to_account:
            page_to_account[pid] = ad["ad_account_id"]
    page_info = resolve_page_names(page_to_account, tokens, force_refresh=force_refresh)
    return [format_ad(ad, page_info) for ad in raw_ads]


# Shared route logic ------------------------------------------------------------
def list_cache_key(kind: str, user_id: str, ad_account_ids: List[str], date_from: Optional[str], date_to: Optional[str], variant: str) -> str:
    range_key = f"{date_from}_{date_to}" if date_from and date_to else "all"
    return generate_cache_key(f"meta:{kind}:{CACHE_VERSIONS[kind]}", user_id, f"{','.join(sorted(ad_account_ids))}:{range_key}:{variant}")


def list_request(
    db: Session,
    user_id: str,
    email: Optional[str],
    kind: str,
    raw_ids: Optional[str],
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    status: Optional[str] = None,
    mode: Optional[str] = None,
    refresh: bool = False,
    session_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Validate, cap and cache one campaigns / adsets / ads listing for the caller."""
    ids = parse_ad_account_ids(raw_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="adAccountId_required")
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="user_not_found")

    pool = get_subscription_pool(db, user_id, email)
    if pool.ad_account_ids:
        allowed = {normalize_ad_account_id(i) for i in pool.ad_account_ids}
        ids = [i for i in ids if i in allowed]
        if not ids:
            return {
                kind: [],
                "total": 0,
                "errors": ["Unauthorized: Selected ad accounts are not in your subscription pool"],
                "accounts_included": 0,
            }

    tokens = get_user_tokens_only(db, user_id, session_token)
    if not tokens:
        raise HTTPException(status_code=400, detail="facebook_not_connected")

    plan = user.plan or "FREE"
    cap = min(plans.get_api_account_cap(plan), quota.MAX_ACCOUNTS_PER_REQUEST)
    requested = len(ids)
    ids = ids[:cap]
    chunk_size = plans.dynamic_chunk_size(len(ids))
    chunk_delay = plans.dynamic_chunk_delay_ms(len(ids))

    if kind == "campaigns":
        effective_mode = mode or ("lite" if len(ids) > plans.get_lite_mode_threshold(plan) else None)
        variant = f"{effective_mode or 'full'}:{status or 'all'}"
        ttl = quota.resource_ttl("CAMPAIGNS_LIST")
        fetch = lambda: fetch_campaigns(ids, tokens, date_from, date_to, effective_mode, chunk_size, chunk_delay, status)
    elif kind == "adsets":
        variant = f"all:{status or 'all'}"
        ttl = quota.resource_ttl("ADSETS_LIST")
        fetch = lambda: fetch_adsets(ids, tokens, date_from, date_to, status, chunk_size, chunk_delay)
    elif kind == "ads":
        variant = f"all:{status or 'all'}"
        ttl = quota.resource_ttl("ADS_LIST")
        fetch = lambda: fetch_ads(ids, tokens, date_from, date_to, status, refresh, chunk_size, chunk_delay)
    else:
        raise ValueError(f"unknown listing kind: {kind}")

    key = list_cache_key(kind, user_id, ids, date_from, date_to, variant)
    if refresh:
        clear_swr_entry(key)
    result = with_cache_swr(key, ttl, quota.SWR_STALE_TTL, fetch, name=kind)

    if kind == "ads":
        rows = result.data if isinstance(result.data, list) else []
        payload: Dict[str, Any] = {"ads": rows, "total": len(rows)}
    else:
        data = result.data or {}
        rows = data.get(kind) or []
        payload = {kind: rows, "total": len(rows), "errors": data.get("errors") or []}
    payload["accounts_included"] = len(ids)
    if requested > len(ids):
        payload["accounts_truncated"] = requested
    if result.is_stale:
        payload["stale"] = True
    return payload
