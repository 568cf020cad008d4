from typing import Optional
from sqlalchemy import String, Boolean, Integer, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base
import time
import uuid


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[Optional[str]] = mapped_column(String(256), index=True, unique=True, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    plan: Mapped[str] = mapped_column(String(16), default="FREE")  # FREE|PLUS|PRO
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class OAuthAccount(Base):
    """Provider account linked at login (one user may hold several)."""
    __tablename__ = "oauth_accounts"
    __table_args__ = (UniqueConstraint("provider", "provider_account_id"),)
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    provider: Mapped[str] = mapped_column(String(32), index=True)
    provider_account_id: Mapped[str] = mapped_column(String(128))
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class MetaAccount(Base):
    """Token from the Settings > Meta connect flow; stored encrypted."""
    __tablename__ = "meta_accounts"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True, unique=True)
    meta_user_id: Mapped[str] = mapped_column(String(64), index=True)
    access_token_enc: Mapped[str] = mapped_column(Text)
    access_token_expires: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class TeamMember(Base):
    __tablename__ = "team_members"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)  # host
    member_type: Mapped[str] = mapped_column(String(16), index=True)  # facebook|email
    facebook_user_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    facebook_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_token_expires: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    member_email: Mapped[Optional[str]] = mapped_column(String(256), index=True, nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="EMPLOYEE")  # OWNER|ADMIN|EMPLOYEE
    updated_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class Subscription(Base):
    __tablename__ = "subscriptions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default="trial")  # active|trial|canceled|expired
    expires_at: Mapped[int] = mapped_column(Integer)
    selected_page_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list
    selected_ad_account_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list
    updated_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class Conversation(Base):
    __tablename__ = "conversations"
    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # t_<page>_<participant>
    page_id: Mapped[str] = mapped_column(String(64), index=True)
    participant_id: Mapped[str] = mapped_column(String(64), index=True)
    participant_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    snippet: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    ad_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_message_at: Mapped[int] = mapped_column(Integer, index=True)
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))


class Message(Base):
    __tablename__ = "messages"
    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # Messenger mid
    conversation_id: Mapped[str] = mapped_column(String(160), ForeignKey("conversations.id"), index=True)
    sender_id: Mapped[str] = mapped_column(String(64))
    sender_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    content: Mapped[str] = mapped_column(Text)
    attachments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list
    sticker_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    is_from_page: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()))
