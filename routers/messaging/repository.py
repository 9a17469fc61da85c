"""Messaging repository layer."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session


# --- conversations ---


def get_conversation(db: Session, *, conversation_id):
    from models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_dm_by_pair_key(db: Session, *, pair_key: str):
    from models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.kind == "dm", Conversation.dm_pair_key == pair_key)
        .first()
    )


def find_dm_between_users(db: Session, *, user_ids: List[str]):
    """DM whose member set is exactly ``user_ids`` (fallback when the pair key is missing)."""
    from models import Conversation, ConversationMember

    shared = (
        db.query(ConversationMember.conversation_id)
        .filter(ConversationMember.user_id.in_(user_ids))
        .group_by(ConversationMember.conversation_id)
        .having(func.count(ConversationMember.user_id) == len(user_ids))
    )
    for conversation in (
        db.query(Conversation)
        .filter(Conversation.kind == "dm", Conversation.id.in_(shared))
        .order_by(Conversation.created_at.asc())
        .all()
    ):
        if count_members(db, conversation_id=conversation.id) == len(user_ids):
            return conversation
    return None


def create_conversation(db: Session, *, kind: str, created_by: str, title=None, pair_key=None):
    from models import Conversation

    now = datetime.utcnow()
    conversation = Conversation(
        kind=kind,
        title=title,
        created_by=created_by,
        created_at=now,
        updated_at=now,
        last_sequence=0,
        dm_pair_key=pair_key,
    )
    db.add(conversation)
    return conversation


def list_user_conversations(db: Session, *, user_id: str, limit: int, offset: int):
    from models import Conversation, ConversationMember

    return (
        db.query(Conversation)
        .join(ConversationMember, ConversationMember.conversation_id == Conversation.id)
        .filter(ConversationMember.user_id == user_id)
        .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def next_sequence(db: Session, *, conversation_id, now: datetime) -> int:
    """Atomically bump the conversation's counter and ``updated_at``; returns the new value."""
    from models import Conversation

    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_sequence=Conversation.last_sequence + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (
        db.query(Conversation.last_sequence)
        .filter(Conversation.id == conversation_id)
        .scalar()
    )


# --- members ---


def get_member(db: Session, *, conversation_id, user_id: str):
    from models import ConversationMember

    return (
        db.query(ConversationMember)
        .filter(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.user_id == user_id,
        )
        .first()
    )


def list_members(db: Session, *, conversation_id):
    from models import ConversationMember

    return (
        db.query(ConversationMember)
        .filter(ConversationMember.conversation_id == conversation_id)
        .order_by(ConversationMember.joined_at.asc(), ConversationMember.id.asc())
        .all()
    )


def list_members_for_conversations(db: Session, *, conversation_ids: List) -> Dict:
    from models import ConversationMember

    if not conversation_ids:
        return {}
    result: Dict = {}
    for member in (
        db.query(ConversationMember)
        .filter(ConversationMember.conversation_id.in_(conversation_ids))
        .order_by(ConversationMember.joined_at.asc(), ConversationMember.id.asc())
        .all()
    ):
        result.setdefault(member.conversation_id, []).append(member)
    return result


def count_members(db: Session, *, conversation_id) -> int:
    from models import ConversationMember

    return (
        db.query(func.count(ConversationMember.id))
        .filter(ConversationMember.conversation_id == conversation_id)
        .scalar()
        or 0
    )


def count_admins(db: Session, *, conversation_id) -> int:
    from models import ConversationMember

    return (
        db.query(func.count(ConversationMember.id))
        .filter(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.role == "admin",
        )
        .scalar()
        or 0
    )


def add_member(db: Session, *, conversation_id, user_id: str, role: str = "member", joined_at=None):
    from models import ConversationMember

    member = ConversationMember(
        conversation_id=conversation_id,
        user_id=user_id,
        role=role,
        joined_at=joined_at or datetime.utcnow(),
    )
    db.add(member)
    return member


def co_member_user_ids(db: Session, *, user_id: str) -> List[str]:
    """Everyone who shares at least one conversation with ``user_id``."""
    from models import ConversationMember

    mine = db.query(ConversationMember.conversation_id).filter(ConversationMember.user_id == user_id)
    rows = (
        db.query(ConversationMember.user_id)
        .filter(
            ConversationMember.conversation_id.in_(mine),
            ConversationMember.user_id != user_id,
        )
        .distinct()
        .all()
    )
    return [row[0] for row in rows]


def list_user_conversation_ids(db: Session, *, user_id: str) -> List:
    from models import ConversationMember

    return [
        row[0]
        for row in db.query(ConversationMember.conversation_id)
        .filter(ConversationMember.user_id == user_id)
        .all()
    ]


# --- messages ---


def create_message(
    db: Session,
    *,
    conversation_id,
    sender_id: str,
    content: Optional[str],
    file_url: Optional[str],
    sequence: int,
    created_at: datetime,
    parent_message_id=None,
):
    from models import Message

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        file_url=file_url,
        parent_message_id=parent_message_id,
        sequence=sequence,
        thread_count=0,
        created_at=created_at,
    )
    db.add(message)
    return message


def get_message(db: Session, *, message_id):
    from models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def list_messages(
    db: Session,
    *,
    conversation_id,
    limit: int,
    before_sequence: Optional[int] = None,
    include_thread_replies: bool = False,
):
    """Newest ``limit`` live messages, returned oldest first."""
    from models import Message

    query = db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.deleted_at.is_(None),
    )
    if not include_thread_replies:
        query = query.filter(Message.parent_message_id.is_(None))
    if before_sequence is not None:
        query = query.filter(Message.sequence < before_sequence)
    rows = query.order_by(Message.sequence.desc()).limit(limit).all()
    rows.reverse()
    return rows


def get_last_messages(db: Session, *, conversation_ids: List) -> Dict:
    from models import Message

    if not conversation_ids:
        return {}
    latest = (
        db.query(Message.conversation_id, func.max(Message.sequence).label("sequence"))
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.deleted_at.is_(None),
        )
        .group_by(Message.conversation_id)
        .subquery()
    )
    rows = (
        db.query(Message)
        .join(
            latest,
            (Message.conversation_id == latest.c.conversation_id)
            & (Message.sequence == latest.c.sequence),
        )
        .all()
    )
    return {message.conversation_id: message for message in rows}


def list_thread_replies(db: Session, *, parent_message_id, limit: int):
    from models import Message

    return (
        db.query(Message)
        .filter(
            Message.parent_message_id == parent_message_id,
            Message.deleted_at.is_(None),
        )
        .order_by(Message.created_at.asc(), Message.sequence.asc())
        .limit(limit)
        .all()
    )


def count_thread_replies(db: Session, *, parent_message_id) -> int:
    from models import Message

    return (
        db.query(func.count(Message.id))
        .filter(
            Message.parent_message_id == parent_message_id,
            Message.deleted_at.is_(None),
        )
        .scalar()
        or 0
    )


def adjust_thread_count(db: Session, *, message_id, delta: int) -> None:
    from models import Message

    db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(
            thread_count=case(
                (Message.thread_count + delta < 0, 0),
                else_=Message.thread_count + delta,
            )
        )
        .execution_options(synchronize_session=False)
    )


def list_unread_message_ids(db: Session, *, conversation_id, user_id: str, read_at: datetime) -> List:
    """Live messages from others that ``user_id`` has no receipt for, or an older one."""
    from models import Message, ReadReceipt

    rows = (
        db.query(Message.id, ReadReceipt.id)
        .outerjoin(
            ReadReceipt,
            (ReadReceipt.message_id == Message.id) & (ReadReceipt.user_id == user_id),
        )
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.deleted_at.is_(None),
        )
        .filter((ReadReceipt.id.is_(None)) | (ReadReceipt.read_at < read_at))
        .all()
    )
    return [row[0] for row in rows]


# --- reactions ---


def get_reaction(db: Session, *, message_id, user_id: str, emoji: str):
    from models import MessageReaction

    return (
        db.query(MessageReaction)
        .filter(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
            MessageReaction.emoji == emoji,
        )
        .first()
    )


def create_reaction(db: Session, *, message_id, user_id: str, emoji: str):
    from models import MessageReaction

    reaction = MessageReaction(
        message_id=message_id, user_id=user_id, emoji=emoji, created_at=datetime.utcnow()
    )
    db.add(reaction)
    return reaction


def list_reactions(db: Session, *, message_id):
    from models import MessageReaction

    return (
        db.query(MessageReaction)
        .filter(MessageReaction.message_id == message_id)
        .order_by(MessageReaction.created_at.asc(), MessageReaction.id.asc())
        .all()
    )


# --- read receipts ---


def get_receipts_for_messages(db: Session, *, message_ids: Iterable, user_id: str) -> Dict:
    from models import ReadReceipt

    message_ids = list(message_ids)
    if not message_ids:
        return {}
    return {
        receipt.message_id: receipt
        for receipt in db.query(ReadReceipt)
        .filter(ReadReceipt.message_id.in_(message_ids), ReadReceipt.user_id == user_id)
        .all()
    }


def create_receipt(db: Session, *, message_id, user_id: str, read_at: datetime):
    from models import ReadReceipt

    receipt = ReadReceipt(message_id=message_id, user_id=user_id, read_at=read_at)
    db.add(receipt)
    return receipt


def list_receipts(db: Session, *, message_ids: Iterable):
    from models import ReadReceipt

    message_ids = list(message_ids)
    if not message_ids:
        return []
    return (
        db.query(ReadReceipt)
        .filter(ReadReceipt.message_id.in_(message_ids))
        .order_by(ReadReceipt.read_at.asc())
        .all()
    )


# --- thread subscriptions ---


def get_thread_subscription(db: Session, *, user_id: str, message_id):
    from models import ThreadSubscription

    return (
        db.query(ThreadSubscription)
        .filter(
            ThreadSubscription.user_id == user_id,
            ThreadSubscription.message_id == message_id,
        )
        .first()
    )


def create_thread_subscription(db: Session, *, user_id: str, message_id, subscribed: bool):
    from models import ThreadSubscription

    subscription = ThreadSubscription(
        user_id=user_id, message_id=message_id, subscribed=subscribed, updated_at=datetime.utcnow()
    )
    db.add(subscription)
    return subscription


# --- presence ---


def get_user_statuses(db: Session, *, user_ids: Iterable[str]) -> Dict:
    from models import UserStatus

    user_ids = list(user_ids)
    if not user_ids:
        return {}
    return {
        row.user_id: row
        for row in db.query(UserStatus).filter(UserStatus.user_id.in_(user_ids)).all()
    }


def save_presence_states(db: Session, *, states: Iterable) -> None:
    """Upsert ``user_status`` rows from tracker states."""
    from models import UserStatus

    states = list(states)
    existing = get_user_statuses(db, user_ids=[state.user_id for state in states])
    now = datetime.utcnow()
    for state in states:
        row = existing.get(state.user_id)
        if row is None:
            row = UserStatus(user_id=state.user_id)
            db.add(row)
            existing[state.user_id] = row
        row.status = state.status
        row.last_seen = state.last_seen
        row.last_activity_at = state.last_activity_at
        row.updated_at = now
