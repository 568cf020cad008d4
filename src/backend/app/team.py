import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from .integrations import meta_graph
from .models import MetaAccount, OAuthAccount, Subscription, TeamMember, User
from .tokens import refresh_meta_account_token_if_needed, refresh_team_member_token_if_needed

logger = logging.getLogger(__name__)

OWNER = "OWNER"
ADMIN = "ADMIN"
EMPLOYEE = "EMPLOYEE"
ASSIGNABLE_ROLES = [ADMIN, EMPLOYEE]

_ROLE_LABELS = {OWNER: "Owner", ADMIN: "Admin", EMPLOYEE: "Employee"}


def can_access_settings(role: Optional[str]) -> bool:
    return role in (OWNER, ADMIN)


def can_manage_team(role: Optional[str]) -> bool:
    return role in (OWNER, ADMIN)


def role_label(role: Optional[str]) -> str:
    return _ROLE_LABELS.get(str(role or ""), "Employee")


def normalize_ad_account_id(ad_account_id: str) -> str:
    value = str(ad_account_id or "").strip()
    return value if value.startswith("act_") else f"act_{value}"


@dataclass
class TeamConnection:
    id: str
    source: str  # teamMember | metaAccount | oauth
    facebook_user_id: str
    facebook_name: str
    access_token: str
    expires_at: Optional[int] = None


@dataclass
class SubscriptionPool:
    page_ids: List[str] = field(default_factory=list)
    ad_account_ids: List[str] = field(default_factory=list)


def get_effective_host_id(db: Session, user_id: str, email: Optional[str] = None) -> str:
    """The team host whose assets ``user_id`` works on; the user themself when not invited."""
    if not email:
        return user_id
    host_id = db.scalar(
        select(TeamMember.user_id)
        .where(TeamMember.member_email == email.strip(), TeamMember.member_type == "email")
        .order_by(TeamMember.created_at)
        .limit(1)
    )
    return host_id or user_id


def _facebook_name_for(db: Session, owner_id: str, fallback: str, meta: MetaAccount, token: str, name_lookup: bool) -> str:
    row = db.scalar(select(TeamMember).where(TeamMember.facebook_user_id == meta.meta_user_id))
    if row is not None and row.facebook_name:
        return row.facebook_name
    if not name_lookup:
        return fallback
    try:
        me = meta_graph.graph_get("me", token, {"fields": "name"}, attempts=1)
    except (meta_graph.GraphAPIError, httpx.HTTPError) as exc:
        logger.warning("team_connection_name_lookup_failed", extra={"meta_user_id": meta.meta_user_id, "error": str(exc)[:200]})
        return fallback
    name = me.get("name")
    if not name:
        return fallback
    now = int(time.time())
    if row is None:
        db.add(TeamMember(
            user_id=owner_id,
            member_type="facebook",
            facebook_user_id=meta.meta_user_id,
            facebook_name=name,
            access_token=token,
            role=EMPLOYEE,
            updated_at=now,
        ))
    else:
        row.facebook_name = name
        row.updated_at = now
    db.commit()
    return name


def get_team_facebook_connections(db: Session, user_id: str, email: Optional[str] = None, name_lookup: bool = True) -> List[TeamConnection]:
    """Every distinct Facebook login reachable from the caller's team.

    Host's facebook-type members come first, then for each participant (host
    plus email-invited members) their MetaAccount token and finally their OAuth
    facebook accounts. The first connection seen for a Facebook user wins.
    """
    host_id = get_effective_host_id(db, user_id, email)
    connections: List[TeamConnection] = []
    seen: set = set()

    fb_members = db.scalars(
        select(TeamMember)
        .where(
            TeamMember.user_id == host_id,
            TeamMember.member_type == "facebook",
            TeamMember.facebook_user_id.is_not(None),
            TeamMember.access_token.is_not(None),
        )
        .order_by(TeamMember.created_at)
    ).all()
    for member in fb_members:
        if member.facebook_user_id in seen:
            continue
        refreshed = refresh_team_member_token_if_needed(db, member)
        if not refreshed:
            continue
        connections.append(TeamConnection(
            id=member.id,
            source="teamMember",
            facebook_user_id=member.facebook_user_id,
            facebook_name=member.facebook_name or "Facebook User",
            access_token=refreshed.token,
            expires_at=member.access_token_expires,
        ))
        seen.add(member.facebook_user_id)

    emails: List[str] = []
    host = db.get(User, host_id)
    if host is not None and host.email:
        emails.append(host.email.strip())
    member_emails = db.scalars(
        select(TeamMember.member_email).where(
            TeamMember.user_id == host_id,
            TeamMember.member_type == "email",
            TeamMember.member_email.is_not(None),
        )
    ).all()
    for e in member_emails:
        e = (e or "").strip()
        if e and e not in emails:
            emails.append(e)
    if not emails:
        return connections

    participants = db.scalars(select(User).where(User.email.in_(emails))).all()
    participants = sorted(participants, key=lambda u: emails.index(u.email))
    for u in participants:
        meta = db.scalar(select(MetaAccount).where(MetaAccount.user_id == u.id))
        if meta is not None and meta.meta_user_id not in seen:
            token = refresh_meta_account_token_if_needed(db, meta)
            if token:
                name = _facebook_name_for(db, u.id, u.name or "Facebook User", meta, token, name_lookup)
                connections.append(TeamConnection(
                    id=meta.id,
                    source="metaAccount",
                    facebook_user_id=meta.meta_user_id,
                    facebook_name=name,
                    access_token=token,
                    expires_at=meta.access_token_expires,
                ))
                seen.add(meta.meta_user_id)

        accounts = db.scalars(
            select(OAuthAccount).where(OAuthAccount.user_id == u.id, OAuthAccount.provider == "facebook").order_by(OAuthAccount.id)
        ).all()
        for acc in accounts:
            if not acc.access_token or acc.provider_account_id in seen:
                continue
            connections.append(TeamConnection(
                id=f"oauth-{u.id}-{acc.provider_account_id}",
                source="oauth",
                facebook_user_id=acc.provider_account_id,
                facebook_name=u.name or "Facebook User",
                access_token=acc.access_token,
                expires_at=acc.expires_at,
            ))
            seen.add(acc.provider_account_id)

    logger.info("team_connections_resolved", extra={"host_id": host_id, "count": len(connections)})
    return connections


def _safe_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(x) for x in parsed] if isinstance(parsed, list) else []


def get_subscription_pool(db: Session, user_id: str, email: Optional[str] = None) -> SubscriptionPool:
    host_id = get_effective_host_id(db, user_id, email)
    sub = db.scalar(
        select(Subscription)
        .where(
            Subscription.user_id == host_id,
            Subscription.status.in_(["active", "trial"]),
            Subscription.expires_at >= int(time.time()),
        )
        .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    if sub is None:
        return SubscriptionPool()
    return SubscriptionPool(
        page_ids=_safe_list(sub.selected_page_ids),
        ad_account_ids=_safe_list(sub.selected_ad_account_ids),
    )
