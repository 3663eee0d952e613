"""
Row-level access policies.

Every read and write of conversations, participants and messages goes through
the predicates below, evaluated for the caller's authenticated identity:

- conversations: SELECT for participants, INSERT when created_by == caller
- conversation_participants: SELECT for participants of the same
  conversation, INSERT by the conversation creator or for oneself
- messages: SELECT for participants, INSERT when sender_id == caller and the
  caller participates
- profiles: SELECT for everyone, INSERT/UPDATE by the owner

No UPDATE/DELETE policy exists for conversations, participants or messages,
so the repository layer exposes no such operation.

Membership is resolved with two plain lookups on the base tables
(is_conversation_participant / is_conversation_creator). They never go through
another policy, which keeps participant visibility from referring back to
itself.
"""

import logging
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from chatapp.models import Conversation, ConversationParticipant, Message

logger = logging.getLogger(__name__)

AVATARS_BUCKET = "avatars"
CHAT_IMAGES_BUCKET = "chat-images"
BUCKETS = (AVATARS_BUCKET, CHAT_IMAGES_BUCKET)


class PolicyViolation(Exception):
    """Raised when a row or object operation is not permitted for the caller."""

    def __init__(self, table: str, operation: str, detail: str):
        super().__init__(detail)
        self.table = table
        self.operation = operation
        self.detail = detail


# =============================================================================
# Membership lookups
# =============================================================================

def is_conversation_participant(db: Session, conversation_id: str, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    stmt = select(
        exists().where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
    )
    return bool(db.execute(stmt).scalar())


def is_conversation_creator(db: Session, conversation_id: str, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    stmt = select(
        exists().where(
            Conversation.id == conversation_id,
            Conversation.created_by == user_id,
        )
    )
    return bool(db.execute(stmt).scalar())


def member_conversation_ids(user_id: str):
    """Subquery of conversation ids the identity participates in."""
    return (
        select(ConversationParticipant.conversation_id)
        .where(ConversationParticipant.user_id == user_id)
        .scalar_subquery()
    )


# =============================================================================
# SELECT policies (query filters)
# =============================================================================

def visible_conversations(query, user_id: str):
    return query.filter(Conversation.id.in_(member_conversation_ids(user_id)))


def visible_participants(query, user_id: str):
    return query.filter(ConversationParticipant.conversation_id.in_(member_conversation_ids(user_id)))


def visible_messages(query, user_id: str):
    return query.filter(Message.conversation_id.in_(member_conversation_ids(user_id)))


# =============================================================================
# INSERT / UPDATE policies
# =============================================================================

def check_conversation_insert(user_id: str, created_by: Optional[str]) -> None:
    if created_by != user_id:
        logger.warning(f"Conversation insert denied: caller={user_id}, created_by={created_by}")
        raise PolicyViolation("conversations", "INSERT", "conversations may only be created by their creator")


def check_participant_insert(db: Session, user_id: str, conversation_id: str, participant_id: str) -> None:
    if participant_id == user_id:
        return
    if is_conversation_creator(db, conversation_id, user_id):
        return
    logger.warning(
        f"Participant insert denied: caller={user_id}, conversation={conversation_id}, participant={participant_id}"
    )
    raise PolicyViolation(
        "conversation_participants",
        "INSERT",
        "only the conversation creator may add other participants",
    )


def check_message_insert(db: Session, user_id: str, conversation_id: str, sender_id: str) -> None:
    if sender_id != user_id:
        logger.warning(f"Message insert denied: caller={user_id} tried sender={sender_id}")
        raise PolicyViolation("messages", "INSERT", "sender_id must be the authenticated user")
    if not is_conversation_participant(db, conversation_id, user_id):
        logger.warning(f"Message insert denied: caller={user_id} not in conversation={conversation_id}")
        raise PolicyViolation("messages", "INSERT", "sender is not a participant of this conversation")


def check_profile_update(user_id: str, profile_user_id: str) -> None:
    if profile_user_id != user_id:
        raise PolicyViolation("profiles", "UPDATE", "profiles may only be updated by their owner")


# =============================================================================
# Object storage policies
# =============================================================================

def owner_folder(object_name: str) -> str:
    return object_name.split("/", 1)[0] if "/" in object_name else ""


def check_object_insert(user_id: str, bucket: str, object_name: str) -> None:
    if bucket not in BUCKETS:
        raise PolicyViolation("storage.objects", "INSERT", f"unknown bucket '{bucket}'")
    if owner_folder(object_name) != user_id:
        raise PolicyViolation("storage.objects", "INSERT", "objects must be written under the caller's own folder")


def can_read_object(db: Session, user_id: Optional[str], bucket: str, object_name: str) -> bool:
    """
    Avatars are public. A chat image is readable by participants of any
    conversation holding a message that references it.
    """
    if bucket == AVATARS_BUCKET:
        return True
    if bucket != CHAT_IMAGES_BUCKET or not user_id:
        return False
    stmt = select(
        exists().where(
            Message.image_url.like(f"%/{CHAT_IMAGES_BUCKET}/{object_name}"),
            Message.conversation_id.in_(member_conversation_ids(user_id)),
        )
    )
    return bool(db.execute(stmt).scalar())
