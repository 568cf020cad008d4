"""Resolve which Facebook access token can read a given ad account or page.

Callers hand in an ordered list of candidate tokens. The first token that can
see the node wins and is remembered for an hour, but a remembered token is
only reused while it is still one of the caller's candidates.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from .cache import cache_del, cache_get, cache_set, generate_cache_key
from .crypto import encrypt_token, token_or_raw
from .integrations import meta_graph
from .metrics_counters import TOKEN_RESOLUTION
from .models import MetaAccount, OAuthAccount, TeamMember, User

logger = logging.getLogger(__name__)

TOKEN_CACHE_TTL = 3600
REFRESH_THRESHOLD_SECONDS = 7 * 24 * 3600
MIN_TOKEN_LENGTH = 10


@dataclass
class TokenInfo:
    token: str
    name: str


@dataclass
class RefreshResult:
    token: str
    did_extend: bool


def _resolve(kind: str, node_id: str, tokens: List[TokenInfo], fields: str) -> Optional[str]:
    cache_key = generate_cache_key(f"meta:{kind}_token", node_id)
    try:
        cached = cache_get(cache_key)
    except Exception as exc:
        logger.warning("token_cache_read_failed", extra={"key": cache_key, "error": str(exc)[:200]})
        cached = None
    if cached:
        if any(t.token == cached for t in tokens):
            TOKEN_RESOLUTION.labels(kind=kind, result="cached").inc()
            return cached
        # the connection behind this token is gone
        cache_del(cache_key)

    for info in tokens:
        try:
            ok = meta_graph.probe(node_id, info.token, fields)
        except httpx.HTTPError as exc:
            logger.warning("token_probe_network_error", extra={"kind": kind, "node_id": node_id, "error": str(exc)[:200]})
            continue
        if ok:
            cache_set(cache_key, info.token, TOKEN_CACHE_TTL)
            TOKEN_RESOLUTION.labels(kind=kind, result="probed").inc()
            return info.token

    TOKEN_RESOLUTION.labels(kind=kind, result="none").inc()
    logger.info("token_not_found", extra={"kind": kind, "node_id": node_id, "candidates": len(tokens)})
    return None


def get_valid_token_for_ad_account(ad_account_id: str, tokens: List[TokenInfo]) -> Optional[str]:
    return _resolve("account", ad_account_id, tokens, "id,currency")


def get_valid_token_for_page(page_id: str, tokens: List[TokenInfo]) -> Optional[str]:
    return _resolve("page", page_id, tokens, "name")


def fetch_with_multi_token(path: str, ad_account_id: str, tokens: List[TokenInfo], params: Optional[Dict[str, Any]] = None) -> Tuple[int, Dict[str, Any]]:
    token = get_valid_token_for_ad_account(ad_account_id, tokens)
    if not token:
        return 400, {"error": {"message": "No valid access token found for this account"}}
    try:
        return 200, meta_graph.graph_get(path, token, params)
    except meta_graph.GraphAPIError as err:
        return err.status_code or 502, err.payload or {"error": {"message": err.message}}


def get_user_tokens_only(db: Session, user_id: str, session_token: Optional[str] = None) -> List[TokenInfo]:
    """Tokens owned by the signed-in user only, never a teammate's."""
    tokens: List[TokenInfo] = []
    user = db.get(User, user_id)
    if not user:
        return tokens

    def _add(token: Optional[str], name: str) -> None:
        if token and len(token) > MIN_TOKEN_LENGTH and not any(t.token == token for t in tokens):
            tokens.append(TokenInfo(token=token, name=name))

    meta = db.scalar(select(MetaAccount).where(MetaAccount.user_id == user_id))
    if meta is not None:
        _add(token_or_raw(meta.access_token_enc), user.name or "Main")

    accounts = db.scalars(
        select(OAuthAccount).where(OAuthAccount.user_id == user_id, OAuthAccount.provider == "facebook").order_by(OAuthAccount.id)
    ).all()
    for acc in accounts:
        _add(acc.access_token, user.name or "Account")

    _add(session_token, "Session")
    return tokens


def should_refresh(expires_at: Optional[int], now: Optional[float] = None) -> bool:
    if not expires_at:
        return False
    current = time.time() if now is None else now
    return (int(expires_at) - current) < REFRESH_THRESHOLD_SECONDS


def refresh_team_member_token_if_needed(db: Session, member: TeamMember) -> Optional[RefreshResult]:
    if not member.access_token:
        return None
    if not should_refresh(member.access_token_expires):
        return RefreshResult(token=member.access_token, did_extend=False)
    try:
        new_token, expires_in = meta_graph.exchange_for_long_lived_token(member.access_token)
    except (meta_graph.GraphAPIError, httpx.HTTPError) as exc:
        logger.warning("team_member_token_extend_failed", extra={"member_id": member.id, "error": str(exc)[:200]})
        return RefreshResult(token=member.access_token, did_extend=False)
    now = int(time.time())
    member.access_token = new_token
    member.access_token_expires = now + int(expires_in)
    member.updated_at = now
    db.commit()
    logger.info("team_member_token_extended", extra={"member_id": member.id, "expires": member.access_token_expires})
    return RefreshResult(token=new_token, did_extend=True)


def refresh_meta_account_token_if_needed(db: Session, meta_account: MetaAccount) -> Optional[str]:
    if not meta_account.access_token_enc:
        return None
    current = token_or_raw(meta_account.access_token_enc)
    if not should_refresh(meta_account.access_token_expires) or not current:
        return current
    try:
        new_token, expires_in = meta_graph.exchange_for_long_lived_token(current)
    except (meta_graph.GraphAPIError, httpx.HTTPError) as exc:
        logger.warning("meta_account_token_extend_failed", extra={"meta_account_id": meta_account.id, "error": str(exc)[:200]})
        return current
    now = int(time.time())
    meta_account.access_token_enc = encrypt_token(new_token)
    meta_account.access_token_expires = now + int(expires_in)
    meta_account.updated_at = now
    db.commit()
    logger.info("meta_account_token_extended", extra={"meta_account_id": meta_account.id})
    return new_token
