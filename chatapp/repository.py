"""
Data access for accounts, profiles, conversations and messages.

Every function that reads or writes conversation data takes the caller's
identity (`user_id`) and applies the matching policy from chatapp.policies
before touching the table, so the rules hold no matter which route calls in.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatapp import policies
from chatapp.config import settings
from chatapp.models import (
    AccessToken,
    Account,
    Conversation,
    ConversationParticipant,
    Message,
    MessageType,
    Profile,
)
from chatapp.utils import hash_password, iso_now, new_token, to_iso, utcnow, verify_password

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10


class Conflict(Exception):
    """A uniqueness constraint rejected the write."""


# =============================================================================
# Accounts & tokens
# =============================================================================

def create_account(
    db: Session,
    email: str,
    password: str,
    username: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Account:
    """
    Register an account. The profile row is created by the handle_new_user hook
    in the same transaction.

    Raises:
        Conflict: email or username already taken
    """
    email = email.strip().lower()
    logger.info(f"Creating account: email={email}, username={username}")

    account = Account(
        email=email,
        password_hash=hash_password(password),
        user_metadata={"username": username, "display_name": display_name or username},
    )
    db.add(account)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info(f"Signup rejected, duplicate email or username: {email}")
        raise Conflict("email or username already registered") from e

    logger.info(f"Account created: {account.id}")
    return account


def authenticate(db: Session, email: str, password: str) -> Optional[Account]:
    account = db.query(Account).filter(Account.email == email.strip().lower()).first()
    if account is None or not verify_password(password, account.password_hash):
        logger.info(f"Authentication failed for {email}")
        return None
    return account


def issue_token(db: Session, user_id: str) -> AccessToken:
    expires_at = to_iso(utcnow() + timedelta(seconds=settings.TOKEN_TTL_SECONDS))
    token = AccessToken(token=new_token(), user_id=user_id, expires_at=expires_at)
    db.add(token)
    db.commit()
    logger.debug(f"Issued token for {user_id}, expires {expires_at}")
    return token


def resolve_token(db: Session, token: str) -> Optional[str]:
    """Return the identity behind a bearer token, or None if unknown/expired."""
    row = db.get(AccessToken, token)
    if row is None:
        return None
    if row.expires_at < iso_now():
        logger.info(f"Expired token presented for {row.user_id}")
        return None
    return row.user_id


def revoke_token(db: Session, token: str) -> None:
    db.query(AccessToken).filter(AccessToken.token == token).delete()
    db.commit()


# =============================================================================
# Profiles
# =============================================================================

def get_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


def get_profiles(db: Session, user_ids: Iterable[str]) -> list[Profile]:
    ids = list(set(user_ids))
    if not ids:
        return []
    return db.query(Profile).filter(Profile.user_id.in_(ids)).all()


def update_profile(db: Session, user_id: str, profile_user_id: str, **changes) -> Profile:
    """
    Apply owner-only profile changes. None values are ignored.

    Raises:
        PolicyViolation: caller is not the owner
        Conflict: username already taken
        LookupError: no such profile
    """
    policies.check_profile_update(user_id, profile_user_id)
    profile = get_profile(db, profile_user_id)
    if profile is None:
        raise LookupError(profile_user_id)

    for field in ("username", "display_name", "bio", "avatar_url"):
        value = changes.get(field)
        if value is not None:
            setattr(profile, field, value)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise Conflict("username already taken") from e
    logger.info(f"Profile updated: {profile_user_id}")
    return profile


def search_profiles(db: Session, user_id: str, term: str, limit: int = SEARCH_LIMIT) -> list[Profile]:
    term = term.strip()
    if not term:
        return []
    pattern = f"%{term}%"
    return (
        db.query(Profile)
        .filter(or_(Profile.username.ilike(pattern), Profile.display_name.ilike(pattern)))
        .filter(Profile.user_id != user_id)
        .order_by(Profile.display_name.asc())
        .limit(limit)
        .all()
    )


# =============================================================================
# Conversations & participants
# =============================================================================

def create_conversation(
    db: Session,
    user_id: str,
    name: Optional[str],
    is_group: bool,
    created_by: Optional[str] = None,
) -> Conversation:
    created_by = user_id if created_by is None else created_by
    policies.check_conversation_insert(user_id, created_by)

    conversation = Conversation(name=name, is_group=is_group, created_by=created_by)
    db.add(conversation)
    db.commit()
    logger.info(f"Conversation created: {conversation.id} by {created_by}")
    return conversation


def add_participants(
    db: Session, user_id: str, conversation_id: str, participant_ids: list[str]
) -> list[ConversationParticipant]:
    """
    Insert participant rows in one statement batch.

    Raises:
        PolicyViolation: a row fails the INSERT policy
        Conflict: a (conversation, user) pair already exists
    """
    rows = []
    for participant_id in participant_ids:
        policies.check_participant_insert(db, user_id, conversation_id, participant_id)
        rows.append(ConversationParticipant(conversation_id=conversation_id, user_id=participant_id))

    db.add_all(rows)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info(f"Duplicate or invalid participant for conversation {conversation_id}: {participant_ids}")
        raise Conflict("participant already in conversation") from e

    logger.info(f"Added participants to {conversation_id}: {participant_ids}")
    return rows


def add_participant(db: Session, user_id: str, conversation_id: str, participant_id: str) -> ConversationParticipant:
    return add_participants(db, user_id, conversation_id, [participant_id])[0]


def get_conversation(db: Session, user_id: str, conversation_id: str) -> Optional[Conversation]:
    query = db.query(Conversation).filter(Conversation.id == conversation_id)
    return policies.visible_conversations(query, user_id).first()


def list_conversations(db: Session, user_id: str) -> list[Conversation]:
    query = db.query(Conversation)
    return policies.visible_conversations(query, user_id).order_by(Conversation.created_at.desc()).all()


def list_participants(db: Session, user_id: str, conversation_id: str) -> list[ConversationParticipant]:
    query = db.query(ConversationParticipant).filter(ConversationParticipant.conversation_id == conversation_id)
    return policies.visible_participants(query, user_id).order_by(ConversationParticipant.joined_at.asc()).all()


def participant_user_ids(db: Session, conversation_id: str) -> list[str]:
    """Unfiltered membership list, used for server-side fan-out only."""
    rows = (
        db.query(ConversationParticipant.user_id)
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .all()
    )
    return [row.user_id for row in rows]


# =============================================================================
# Messages
# =============================================================================

def create_message(
    db: Session,
    user_id: str,
    conversation_id: str,
    sender_id: Optional[str] = None,
    content: Optional[str] = None,
    image_url: Optional[str] = None,
    message_type: MessageType = MessageType.TEXT,
) -> Message:
    sender_id = user_id if sender_id is None else sender_id
    policies.check_message_insert(db, user_id, conversation_id, sender_id)

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        image_url=image_url,
        message_type=message_type.value,
    )
    db.add(message)
    db.commit()
    logger.info(f"Message created: id={message.id}, conversation={conversation_id}, type={message_type.value}")
    return message


def list_messages(db: Session, user_id: str, conversation_id: str) -> list[Message]:
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    return (
        policies.visible_messages(query, user_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
