import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Conversation, Message

logger = logging.getLogger(__name__)

SNIPPET_MAX = 200
DEFAULT_PARTICIPANT_NAME = "Facebook User"


def verify_token() -> str:
    return os.getenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "adhub_adbox_verify_token")


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    if mode == "subscribe" and token == verify_token() and challenge:
        return challenge
    return None


def verify_signature(raw: bytes, header: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not header:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, str(header))


def conversation_id(page_id: str, participant_id: str) -> str:
    return f"t_{page_id}_{participant_id}"


def _ad_referral(referral: Optional[Dict[str, Any]]) -> Optional[str]:
    if isinstance(referral, dict) and referral.get("source") == "ADS" and referral.get("ad_id"):
        return str(referral["ad_id"])
    return None


def _event_time(event: Dict[str, Any]) -> int:
    ts = event.get("timestamp")
    if isinstance(ts, (int, float)) and ts > 0:
        return int(ts // 1000)
    return int(time.time())


def summarize_attachments(attachments: List[Dict[str, Any]]):
    """(content, attachments_json, sticker_url) for a message that carries no text."""
    items = [{"type": str(a.get("type") or "file").lower(), "url": (a.get("payload") or {}).get("url")} for a in attachments]
    sticker = next((a for a in items if a["type"] == "sticker"), None)
    image = next((a for a in items if a["type"] == "image"), None)
    if sticker:
        content = "[Sticker]"
    elif image:
        content = "[Image]"
    else:
        content = "[Attachment]"
    return content, json.dumps(items), (sticker or {}).get("url")


def _find_conversation(db: Session, page_id: str, sender_id: str) -> Optional[Conversation]:
    return db.scalar(
        select(Conversation)
        .where(Conversation.page_id == page_id, Conversation.participant_id == sender_id)
        .limit(1)
    )


def _handle_referral(db: Session, page_id: str, sender_id: str, ad_id: str, at: int) -> None:
    conv = _find_conversation(db, page_id, sender_id)
    if conv is None:
        db.add(Conversation(
            id=conversation_id(page_id, sender_id),
            page_id=page_id,
            participant_id=sender_id,
            participant_name=DEFAULT_PARTICIPANT_NAME,
            snippet="",
            unread_count=0,
            ad_id=ad_id,
            last_message_at=at,
        ))
    else:
        conv.ad_id = ad_id
    db.flush()


def _handle_message(db: Session, page_id: str, sender_id: str, event: Dict[str, Any]) -> bool:
    message = event.get("message") or {}
    ad_id = _ad_referral(message.get("referral"))
    content = message.get("text") or None
    attachments_json = None
    sticker_url = None
    attachments = message.get("attachments") or []
    if attachments and not content:
        content, attachments_json, sticker_url = summarize_attachments(attachments)

    at = _event_time(event)
    snippet = (content or "")[:SNIPPET_MAX]
    conv = _find_conversation(db, page_id, sender_id)
    if conv is None:
        conv = Conversation(
            id=conversation_id(page_id, sender_id),
            page_id=page_id,
            participant_id=sender_id,
            participant_name=DEFAULT_PARTICIPANT_NAME,
            snippet=snippet,
            unread_count=1,
            ad_id=ad_id,
            last_message_at=at,
        )
        db.add(conv)
    else:
        conv.last_message_at = at
        conv.snippet = snippet
        conv.unread_count = (conv.unread_count or 0) + 1
        if ad_id:
            conv.ad_id = ad_id
    db.flush()

    mid = message.get("mid")
    if not mid:
        return False
    if db.get(Message, mid) is not None:
        # redelivery of a message already stored
        return False
    db.add(Message(
        id=mid,
        conversation_id=conv.id,
        sender_id=sender_id,
        sender_name=DEFAULT_PARTICIPANT_NAME,
        content=content or "[Message]",
        attachments=attachments_json,
        sticker_url=sticker_url,
        is_from_page=False,
        created_at=at,
    ))
    db.flush()
    return True


def process_webhook(db: Session, body: Dict[str, Any]) -> int:
    """Store Messenger events from one webhook delivery. Returns messages stored."""
    stored = 0
    for entry in body.get("entry") or []:
        for event in entry.get("messaging") or []:
            sender_id = (event.get("sender") or {}).get("id")
            page_id = (event.get("recipient") or {}).get("id")
            if not sender_id or not page_id:
                continue
            sender_id, page_id = str(sender_id), str(page_id)

            ad_id = _ad_referral(event.get("referral"))
            if ad_id:
                _handle_referral(db, page_id, sender_id, ad_id, _event_time(event))
                continue

            message = event.get("message")
            if not message or message.get("is_echo"):
                continue
            if _handle_message(db, page_id, sender_id, event):
                stored += 1
    db.commit()
    logger.info("adbox_webhook_processed", extra={"stored": stored})
    return stored


def list_conversations(db: Session, page_ids: List[str], limit: int = 50) -> List[Dict[str, Any]]:
    if not page_ids:
        return []
    rows = db.scalars(
        select(Conversation)
        .where(Conversation.page_id.in_(page_ids))
        .order_by(Conversation.last_message_at.desc())
        .limit(max(1, min(int(limit), 200)))
    ).all()
    return [
        {
            "id": c.id,
            "page_id": c.page_id,
            "participant_id": c.participant_id,
            "participant_name": c.participant_name,
            "snippet": c.snippet,
            "unread_count": c.unread_count,
            "ad_id": c.ad_id,
            "last_message_at": c.last_message_at,
        }
        for c in rows
    ]
