"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy, plus the
two row hooks the schema relies on:
- handle_new_user: every new account gets a profile
- update_updated_at: profiles and conversations stamp updated_at on update

For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    event,
)

from chatapp.storage import Base
from chatapp.utils import iso_now, new_id


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    CALL = "call"


class Account(Base):
    """
    Authenticated identity. Profiles, participants and messages reference
    accounts, never profiles.

    Table: accounts
    """
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    # Signup metadata consumed by handle_new_user
    user_metadata = Column(JSON, nullable=False, default=dict)
    created_at = Column(String, nullable=False, default=iso_now)


class AccessToken(Base):
    __tablename__ = "access_tokens"

    token = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(String, nullable=False, default=iso_now)
    expires_at = Column(String, nullable=False)


class Profile(Base):
    """
    Public profile, one per account.

    Table: profiles
    Unique: user_id, username
    """
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    username = Column(String, nullable=True, unique=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    last_seen = Column(String, nullable=True, default=iso_now, index=True)
    created_at = Column(String, nullable=False, default=iso_now)
    updated_at = Column(String, nullable=False, default=iso_now)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=True)
    is_group = Column(Boolean, nullable=False, default=False)
    created_by = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(String, nullable=False, default=iso_now)
    updated_at = Column(String, nullable=False, default=iso_now)


class ConversationParticipant(Base):
    """
    Membership row linking a conversation and an account.

    Table: conversation_participants
    Unique: (conversation_id, user_id)
    """
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
    )

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    joined_at = Column(String, nullable=False, default=iso_now)


class Message(Base):
    """
    Chat message. Rows are never updated or deleted.

    Table: messages
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "message_type IN ('text', 'image', 'call')", name="ck_message_type"
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    message_type = Column(String, nullable=False, default=MessageType.TEXT.value)
    created_at = Column(String, nullable=False, default=iso_now, index=True)


# =============================================================================
# Row hooks
# =============================================================================

@event.listens_for(Account, "after_insert")
def handle_new_user(mapper, connection, target: Account) -> None:
    """Create the profile for a freshly inserted account from its signup metadata."""
    metadata = target.user_metadata or {}
    connection.execute(
        Profile.__table__.insert().values(
            id=new_id(),
            user_id=target.id,
            username=metadata.get("username"),
            display_name=metadata.get("display_name"),
            last_seen=iso_now(),
            created_at=iso_now(),
            updated_at=iso_now(),
        )
    )


@event.listens_for(Profile, "before_update")
@event.listens_for(Conversation, "before_update")
def update_updated_at(mapper, connection, target) -> None:
    target.updated_at = iso_now()
