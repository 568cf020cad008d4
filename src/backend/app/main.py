from fastapi import FastAPI, Depends, Request, HTTPException
from fastapi.responses import PlainTextResponse, JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from typing import Dict, Any, Optional
import json
import logging
import os
from sqlalchemy.orm import Session
from pydantic import BaseModel
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk

from .db import get_db
from .models import User
from .auth import get_user_context, UserContext
from .cache import (
    _client as _cache_client,
    cache_get,
    cache_set,
    get_cache_stats,
    invalidate_team_caches_for_user,
    invalidate_user_cache,
    TEAM_AD_ACCOUNTS_CACHE,
    TEAM_CONFIG_CACHE,
    TEAM_PAGES_CACHE,
)
from .metrics_counters import CACHE_HIT, CACHE_MISS, CACHE_STALE, WEBHOOK_EVENTS, sum_counter
from . import assets, inbox, insights, quota
from .rate_limit import enforce
from .team import get_subscription_pool

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# Optional Sentry capture (dsn via SENTRY_DSN)
_sentry_dsn = os.getenv("SENTRY_DSN", "").strip()
if _sentry_dsn:
    sentry_sdk.init(
        dsn=_sentry_dsn,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05")),
        release=os.getenv("SENTRY_RELEASE", None),
        environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", None)),
    )

tags_metadata = [
    {"name": "Health", "description": "Service and cache health."},
    {"name": "Team", "description": "Team-wide Facebook businesses, ad accounts and pages."},
    {"name": "Ads", "description": "Campaign, ad set and ad listings across ad accounts."},
    {"name": "AdBox", "description": "Messenger webhook and conversations."},
]

app = FastAPI(title="AdHub Backend", version="0.1.0", openapi_tags=tags_metadata)

cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", extra={"path": request.url.path}, exc_info=exc)
    return JSONResponse({"error": "internal_error", "detail": str(exc)[:400]}, status_code=500)


def _require_user(db: Session, ctx: UserContext) -> User:
    user = db.get(User, ctx.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="user_not_found")
    return user


def _is_true(value: Optional[str]) -> bool:
    return str(value or "").lower() == "true"


# ----------------------------- Health -----------------------------
@app.get("/health", tags=["Health"])
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/cache/health", tags=["Health"])
def cache_health() -> Dict[str, object]:
    counts = {"hits": sum_counter(CACHE_HIT), "misses": sum_counter(CACHE_MISS), "stale": sum_counter(CACHE_STALE)}
    client = _cache_client()
    if client is None:
        return {"redis": "disabled", **counts, **get_cache_stats("*")}
    try:
        pong = client.ping()
        return {"redis": "ok", "ping": bool(pong), **counts, **get_cache_stats("meta:*")}
    except Exception as e:
        return {"redis": "error", "detail": str(e)[:200]}


@app.get("/metrics/prometheus", tags=["Health"])
def prometheus_metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ------------------------------ Team ------------------------------
@app.get("/api/team/config", tags=["Team"])
def team_config(
    refresh: Optional[str] = None,
    ctx: UserContext = Depends(get_user_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = _require_user(db, ctx)
    key = f"team:config:{user.id}"
    if not _is_true(refresh):
        cached = cache_get(key) or TEAM_CONFIG_CACHE.get(user.id)
        if cached is not None:
            CACHE_HIT.labels(cache="team_config").inc()
            out = dict(cached)
            # entries written before the unfiltered lists existed
            out.setdefault("all_business_pages", out.get("business_pages") or [])
            out.setdefault("all_business_accounts_unfiltered", out.get("business_accounts") or [])
            return out
    CACHE_MISS.labels(cache="team_config").inc()
    data = assets.get_team_config(db, user.id, ctx.email)
    TEAM_CONFIG_CACHE.set(user.id, data)
    cache_set(key, data, quota.resource_ttl("TEAM_CONFIG"))
    return data


@app.get("/api/team/ad-accounts", tags=["Team"])
def team_ad_accounts(
    mode: Optional[str] = None,
    refresh: Optional[str] = None,
    ctx: UserContext = Depends(get_user_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = _require_user(db, ctx)
    variant = f"{user.id}:{mode or 'default'}"
    key = f"team:ad-accounts:{variant}"
    if not _is_true(refresh):
        cached = cache_get(key) or TEAM_AD_ACCOUNTS_CACHE.get(variant)
        if cached is not None:
            CACHE_HIT.labels(cache="team_ad_accounts").inc()
            return cached
    CACHE_MISS.labels(cache="team_ad_accounts").inc()
    data = assets.get_team_ad_accounts(db, user.id, ctx.email, mode)
    TEAM_AD_ACCOUNTS_CACHE.set(variant, data)
    cache_set(key, data, quota.resource_ttl("AD_ACCOUNTS"))
    return data


@app.get("/api/team/pages", tags=["Team"])
def team_pages(
    mode: Optional[str] = None,
    refresh: Optional[str] = None,
    ctx: UserContext = Depends(get_user_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = _require_user(db, ctx)
    variant = f"{user.id}:{mode or 'default'}"
    key = f"team:pages:{variant}"
    if not _is_true(refresh):
        cached = cache_get(key) or TEAM_PAGES_CACHE.get(variant)
        if cached is not None:
            CACHE_HIT.labels(cache="team_pages").inc()
            return cached
    CACHE_MISS.labels(cache="team_pages").inc()
    result = assets.get_team_pages_for_user(db, user.id, ctx.email)
    pages = result.pages
    if mode != "business":
        pool = get_subscription_pool(db, user.id, ctx.email)
        if pool.page_ids:
            allowed = set(pool.page_ids)
            pages = [p for p in pages if p.get("id") in allowed]
    # team_members_count is a has-pages flag kept for the dashboard, not a member count
    data = {"pages": pages, "team_members_count": 1 if pages else 0, "hint": result.hint}
    # an empty list usually means the Facebook connection is brand new
    if pages:
        cache_set(key, data, quota.resource_ttl("TEAM_CONFIG"))
        TEAM_PAGES_CACHE.set(variant, data)
    else:
        TEAM_PAGES_CACHE.delete(variant)
    return data


class CacheInvalidateRequest(BaseModel):
    scope: str = "all"  # team | meta | all


@app.post("/api/cache/invalidate", tags=["Team"])
def cache_invalidate(
    req: Optional[CacheInvalidateRequest] = None,
    ctx: UserContext = Depends(get_user_context),
) -> Dict[str, Any]:
    scope = (req.scope if req else "all").lower()
    if scope not in ("team", "meta", "all"):
        raise HTTPException(status_code=400, detail="invalid_scope")
    deleted = 0
    if scope in ("team", "all"):
        deleted += invalidate_team_caches_for_user(ctx.user_id)
    if scope in ("meta", "all"):
        deleted += invalidate_user_cache(ctx.user_id)
    return {"status": "ok", "scope": scope, "deleted": deleted}


# ------------------------------ Ads -------------------------------
def _listing(kind: str, request: Request, ctx: UserContext, db: Session) -> Dict[str, Any]:
    enforce(ctx.user_id, kind, "standard")
    sentry_sdk.add_breadcrumb(category="listing", message=f"list {kind}", level="info", data={"user_id": ctx.user_id})
    q = request.query_params
    raw_ids = q.get("adAccountId")
    if not raw_ids:
        raise HTTPException(status_code=400, detail="adAccountId_required")
    return insights.list_request(
        db,
        ctx.user_id,
        ctx.email,
        kind,
        raw_ids,
        date_from=q.get("dateFrom"),
        date_to=q.get("dateTo"),
        status=q.get("status"),
        mode=q.get("mode"),
        refresh=_is_true(q.get("refresh")),
        session_token=ctx.access_token,
    )


@app.get("/api/campaigns", tags=["Ads"])
def list_campaigns(request: Request, ctx: UserContext = Depends(get_user_context), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _listing("campaigns", request, ctx, db)


@app.get("/api/adsets", tags=["Ads"])
def list_adsets(request: Request, ctx: UserContext = Depends(get_user_context), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _listing("adsets", request, ctx, db)


@app.get("/api/ads", tags=["Ads"])
def list_ads(request: Request, ctx: UserContext = Depends(get_user_context), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _listing("ads", request, ctx, db)


# ----------------------------- AdBox ------------------------------
@app.get("/api/webhooks/facebook", tags=["AdBox"])
def webhook_facebook_verify(request: Request):
    q = request.query_params
    challenge = inbox.verify_subscription(q.get("hub.mode"), q.get("hub.verify_token"), q.get("hub.challenge"))
    if challenge is None:
        return PlainTextResponse("Forbidden", status_code=403)
    return PlainTextResponse(challenge, status_code=200)


@app.post("/api/webhooks/facebook", tags=["AdBox"])
async def webhook_facebook(request: Request, db: Session = Depends(get_db)):
    raw = await request.body()
    secret = os.getenv("FACEBOOK_APP_SECRET", "")
    sig = request.headers.get("X-Hub-Signature-256")
    if secret and sig and not inbox.verify_signature(raw, sig, secret):
        WEBHOOK_EVENTS.labels(provider="facebook", status="bad_signature").inc()
        raise HTTPException(status_code=403, detail="invalid_signature")
    try:
        body = json.loads(raw or b"{}")
        stored = inbox.process_webhook(db, body if isinstance(body, dict) else {})
    except Exception as exc:
        db.rollback()
        logger.exception("adbox_webhook_failed", exc_info=exc)
        WEBHOOK_EVENTS.labels(provider="facebook", status="error").inc()
        return PlainTextResponse("Error", status_code=500)
    WEBHOOK_EVENTS.labels(provider="facebook", status="ok").inc()
    logger.info("adbox_webhook_received", extra={"stored": stored})
    return PlainTextResponse("OK", status_code=200)


@app.get("/api/inbox/conversations", tags=["AdBox"])
def inbox_conversations(
    pageIds: Optional[str] = None,
    limit: int = 50,
    ctx: UserContext = Depends(get_user_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    _require_user(db, ctx)
    pool = get_subscription_pool(db, ctx.user_id, ctx.email).page_ids
    if pageIds:
        page_ids = [p.strip() for p in pageIds.split(",") if p.strip()]
        if pool:
            page_ids = [p for p in page_ids if p in pool]
    else:
        page_ids = pool
    items = inbox.list_conversations(db, page_ids, limit)
    return {"conversations": items, "total": len(items)}
