"""Messaging service layer.

Conversation store rules, the message pipeline, threads, reactions, read
receipts, presence and realtime session handling. Functions take the request's
database session plus the process ``RealtimeContext`` and raise the typed
errors from ``core.errors``.
"""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import (
    FILE_ALLOWED_TYPES,
    FILE_MAX_BYTES,
    GROUP_MAX_PARTICIPANTS,
    GROUP_TITLE_MAX_LENGTH,
    MESSAGE_HISTORY_LIMIT,
    MESSAGE_MAX_LENGTH,
    MESSAGE_MAX_PER_MINUTE,
    SESSION_MAX_PER_USER,
)
from core.errors import (
    Conflict,
    Forbidden,
    NotFound,
    RateLimited,
    Unauthorized,
    Unavailable,
    ValidationFailed,
)
from core.events import (
    MEMBERS_CHANGED,
    MESSAGE_CREATED,
    MESSAGE_DELETED,
    MESSAGE_EDITED,
    MESSAGES_READ,
    REACTION_UPDATED,
    Envelope,
)
from core.presence import OFFLINE, PresenceState, PresenceTransition
from routers.messaging import repository as messaging_repository
from utils.storage import StorageError

logger = logging.getLogger(__name__)


# =================================
#  Serialization helpers
# =================================


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_uuid(value, *, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationFailed(f"Invalid {label} ID")


def serialize_message(message) -> dict:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sender_id": message.sender_id,
        "content": message.content,
        "file_url": message.file_url,
        "parent_message_id": str(message.parent_message_id) if message.parent_message_id else None,
        "sequence": message.sequence,
        "thread_count": message.thread_count or 0,
        "created_at": _iso(message.created_at),
        "edited_at": _iso(message.edited_at),
        "deleted_at": _iso(message.deleted_at),
    }


def serialize_member(member) -> dict:
    return {
        "user_id": member.user_id,
        "role": member.role,
        "joined_at": _iso(member.joined_at),
    }


def serialize_conversation(conversation, members, last_message=None) -> dict:
    return {
        "id": str(conversation.id),
        "kind": conversation.kind,
        "title": conversation.title,
        "created_by": conversation.created_by,
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
        "last_sequence": conversation.last_sequence or 0,
        "members": [serialize_member(m) for m in members],
        "last_message": serialize_message(last_message) if last_message else None,
    }


def _load_conversation(db, *, conversation_id):
    conversation = messaging_repository.get_conversation(
        db, conversation_id=_parse_uuid(conversation_id, label="conversation")
    )
    if not conversation:
        raise NotFound("Conversation not found")
    return conversation


def _require_member(db, *, conversation, user_id: str):
    member = messaging_repository.get_member(db, conversation_id=conversation.id, user_id=user_id)
    if not member:
        raise Forbidden("Not a member of this conversation")
    return member


def _require_admin(db, *, conversation, user_id: str):
    member = _require_member(db, conversation=conversation, user_id=user_id)
    if member.role != "admin":
        raise Forbidden("Only group admins can manage members")
    return member


def _load_message(db, *, message_id, allow_deleted: bool = False):
    message = messaging_repository.get_message(
        db, message_id=_parse_uuid(message_id, label="message")
    )
    if not message or (message.deleted_at is not None and not allow_deleted):
        raise NotFound("Message not found")
    return message


def _commit(db, *, action: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}")
        raise Unavailable(f"Failed to {action}")


# =================================
#  Conversation store
# =================================


def dm_pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


def _dm_result(db, conversation, *, created: bool) -> dict:
    members = messaging_repository.list_members(db, conversation_id=conversation.id)
    result = serialize_conversation(conversation, members)
    result["created"] = created
    return result


def create_or_get_dm(db, *, current_user_id: str, peer_user_id: str):
    peer_user_id = (peer_user_id or "").strip()
    if not peer_user_id:
        raise ValidationFailed("peer_user_id is required")
    if peer_user_id == current_user_id:
        raise ValidationFailed("Cannot create conversation with yourself")

    pair_key = dm_pair_key(current_user_id, peer_user_id)
    user_ids = sorted([current_user_id, peer_user_id])

    existing = messaging_repository.get_dm_by_pair_key(db, pair_key=pair_key)
    if not existing:
        existing = messaging_repository.find_dm_between_users(db, user_ids=user_ids)
    if existing:
        return _dm_result(db, existing, created=False)

    now = datetime.utcnow()
    conversation = messaging_repository.create_conversation(
        db, kind="dm", created_by=current_user_id, pair_key=pair_key
    )
    try:
        db.flush()
        for user_id in user_ids:
            messaging_repository.add_member(
                db, conversation_id=conversation.id, user_id=user_id, role="member", joined_at=now
            )
        _commit(db, action="create conversation")
    except IntegrityError:
        # Lost the creation race: the other request's DM is the answer.
        db.rollback()
        existing = messaging_repository.get_dm_by_pair_key(db, pair_key=pair_key)
        if not existing:
            raise Conflict("Conversation was created concurrently; retry")
        return _dm_result(db, existing, created=False)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create DM for {pair_key}: {e}")
        raise Unavailable("Failed to create conversation")

    db.refresh(conversation)
    logger.info(f"Created DM {conversation.id} between users {user_ids[0]} and {user_ids[1]}")
    return _dm_result(db, conversation, created=True)


def create_group(db, *, current_user_id: str, title: str, member_ids: Iterable[str]):
    title = (title or "").strip()
    if not title:
        raise ValidationFailed("Group title cannot be empty")
    if len(title) > GROUP_TITLE_MAX_LENGTH:
        raise ValidationFailed(f"Group title exceeds {GROUP_TITLE_MAX_LENGTH} characters")

    others = []
    for user_id in member_ids or []:
        user_id = (user_id or "").strip()
        if user_id and user_id != current_user_id and user_id not in others:
            others.append(user_id)
    if not others:
        raise ValidationFailed("A group needs at least one member besides the creator")
    if len(others) + 1 > GROUP_MAX_PARTICIPANTS:
        raise ValidationFailed(f"Groups are limited to {GROUP_MAX_PARTICIPANTS} participants")

    now = datetime.utcnow()
    try:
        conversation = messaging_repository.create_conversation(
            db, kind="group", created_by=current_user_id, title=title
        )
        db.flush()
        messaging_repository.add_member(
            db, conversation_id=conversation.id, user_id=current_user_id, role="admin", joined_at=now
        )
        for user_id in others:
            messaging_repository.add_member(
                db, conversation_id=conversation.id, user_id=user_id, role="member", joined_at=now
            )
        db.commit()
    except SQLAlchemyError as e:
        # Never leave a group behind without its members.
        db.rollback()
        logger.error(f"Failed to create group '{title}' for {current_user_id}: {e}")
        raise Unavailable("Failed to create group")

    db.refresh(conversation)
    logger.info(f"Created group {conversation.id} with {len(others) + 1} members")
    members = messaging_repository.list_members(db, conversation_id=conversation.id)
    return serialize_conversation(conversation, members)


def list_conversations(db, *, current_user_id: str, limit: int, offset: int):
    conversations = messaging_repository.list_user_conversations(
        db, user_id=current_user_id, limit=limit, offset=offset
    )
    if not conversations:
        return {"conversations": []}
    conv_ids = [c.id for c in conversations]
    members_map = messaging_repository.list_members_for_conversations(db, conversation_ids=conv_ids)
    last_map = messaging_repository.get_last_messages(db, conversation_ids=conv_ids)
    return {
        "conversations": [
            serialize_conversation(c, members_map.get(c.id, []), last_map.get(c.id))
            for c in conversations
        ]
    }


def get_conversation_details(db, *, current_user_id: str, conversation_id):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    members = messaging_repository.list_members(db, conversation_id=conversation.id)
    last = messaging_repository.get_last_messages(db, conversation_ids=[conversation.id])
    return serialize_conversation(conversation, members, last.get(conversation.id))


async def _announce_members(db, realtime, *, conversation, actor_id: str, change: str, user_ids: List[str]):
    members = messaging_repository.list_members(db, conversation_id=conversation.id)
    await realtime.fanout.publish(
        Envelope(
            type=MEMBERS_CHANGED,
            payload={
                "change": change,
                "user_ids": user_ids,
                "members": [serialize_member(m) for m in members],
            },
            conversation_id=str(conversation.id),
            origin_user_id=actor_id,
        )
    )
    return members


async def attach_member_sessions(db, realtime, *, conversation_id, user_ids: Iterable[str]) -> int:
    """Subscribe the already-open sessions of newly joined members to a conversation.

    Presence watching is widened both ways: the new members' sessions watch
    everyone in the conversation, and existing members' sessions watch the
    new members. Returns the number of sessions subscribed.
    """
    conversation_uuid = _parse_uuid(conversation_id, label="conversation")
    conversation_key = str(conversation_uuid)
    joined = set(user_ids)
    members = [m.user_id for m in messaging_repository.list_members(db, conversation_id=conversation_uuid)]
    attached = 0
    for user_id in members:
        for session in realtime.registry.sessions_of_user(user_id):
            if user_id in joined:
                await realtime.fanout.subscribe(session.session_id, conversation_key)
                attached += 1
                watch = [m for m in members if m != user_id]
            else:
                watch = [m for m in joined if m != user_id]
            if realtime.presence_enabled and watch:
                await realtime.fanout.watch_presence(session.session_id, watch)
    if attached:
        logger.debug(f"Attached {attached} live sessions to conversation {conversation_key}")
    return attached


async def _drop_local_subscriptions(realtime, *, conversation_id: str, user_id: str) -> None:
    for session in realtime.registry.sessions_of_user(user_id):
        await realtime.fanout.unsubscribe(session.session_id, conversation_id)


async def add_members(db, realtime, *, current_user_id: str, conversation_id, user_ids: Iterable[str]):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    if conversation.kind != "group":
        raise ValidationFailed("Members can only be added to groups")
    _require_admin(db, conversation=conversation, user_id=current_user_id)

    existing = {m.user_id for m in messaging_repository.list_members(db, conversation_id=conversation.id)}
    to_add = []
    for user_id in user_ids or []:
        user_id = (user_id or "").strip()
        if user_id and user_id not in existing and user_id not in to_add:
            to_add.append(user_id)
    if len(existing) + len(to_add) > GROUP_MAX_PARTICIPANTS:
        raise ValidationFailed(f"Groups are limited to {GROUP_MAX_PARTICIPANTS} participants")

    if to_add:
        for user_id in to_add:
            messaging_repository.add_member(db, conversation_id=conversation.id, user_id=user_id)
        try:
            _commit(db, action="add members")
        except IntegrityError:
            raise Conflict("Member was added concurrently; retry")
        logger.info(f"Added {len(to_add)} members to group {conversation.id}")
        await attach_member_sessions(db, realtime, conversation_id=conversation.id, user_ids=to_add)
        members = await _announce_members(
            db, realtime, conversation=conversation, actor_id=current_user_id, change="added", user_ids=to_add
        )
    else:
        members = messaging_repository.list_members(db, conversation_id=conversation.id)
    return {"conversation_id": str(conversation.id), "added": to_add, "members": [serialize_member(m) for m in members]}


async def remove_member(db, realtime, *, current_user_id: str, conversation_id, user_id: str):
    if user_id == current_user_id:
        return await leave_group(db, realtime, current_user_id=current_user_id, conversation_id=conversation_id)

    conversation = _load_conversation(db, conversation_id=conversation_id)
    if conversation.kind != "group":
        raise ValidationFailed("Members can only be removed from groups")
    _require_admin(db, conversation=conversation, user_id=current_user_id)

    target = messaging_repository.get_member(db, conversation_id=conversation.id, user_id=user_id)
    if not target:
        raise NotFound("User is not a member of this group")

    db.delete(target)
    _commit(db, action="remove member")
    logger.info(f"Removed {user_id} from group {conversation.id}")

    await _drop_local_subscriptions(realtime, conversation_id=str(conversation.id), user_id=user_id)
    members = await _announce_members(
        db, realtime, conversation=conversation, actor_id=current_user_id, change="removed", user_ids=[user_id]
    )
    return {"conversation_id": str(conversation.id), "removed": user_id, "members": [serialize_member(m) for m in members]}


async def leave_group(db, realtime, *, current_user_id: str, conversation_id):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    if conversation.kind != "group":
        raise ValidationFailed("Direct conversations cannot be left")
    member = _require_member(db, conversation=conversation, user_id=current_user_id)

    promoted = None
    if member.role == "admin" and messaging_repository.count_admins(db, conversation_id=conversation.id) <= 1:
        remaining = [
            m for m in messaging_repository.list_members(db, conversation_id=conversation.id)
            if m.user_id != current_user_id
        ]
        if remaining:
            promoted = remaining[0]
            promoted.role = "admin"
        # The last member may leave too. The group row stays, with no members.

    db.delete(member)
    _commit(db, action="leave group")
    logger.info(
        f"{current_user_id} left group {conversation.id}"
        + (f"; promoted {promoted.user_id} to admin" if promoted else "")
    )

    await _drop_local_subscriptions(realtime, conversation_id=str(conversation.id), user_id=current_user_id)
    members = await _announce_members(
        db, realtime, conversation=conversation, actor_id=current_user_id, change="left", user_ids=[current_user_id]
    )
    return {
        "conversation_id": str(conversation.id),
        "removed": current_user_id,
        "promoted": promoted.user_id if promoted else None,
        "members": [serialize_member(m) for m in members],
    }


# =================================
#  Message pipeline
# =================================


def _normalize_content(content: Optional[str]) -> Optional[str]:
    if content is None:
        return None
    content = content.strip()
    return content or None


def _check_send_rate(realtime, *, user_id: str) -> None:
    result = realtime.rate_limiter.allow(
        key=f"rl:messages:minute:{user_id}",
        limit=MESSAGE_MAX_PER_MINUTE,
        window_seconds=60,
    )
    if not result.allowed:
        raise RateLimited(
            f"Rate limit exceeded. Maximum {MESSAGE_MAX_PER_MINUTE} messages per minute.",
            headers={"Retry-After": str(result.retry_after_seconds)},
        )


async def send_message(
    db,
    realtime,
    *,
    current_user_id: str,
    conversation_id,
    content: Optional[str],
    file_url: Optional[str] = None,
    parent_message_id=None,
):
    content = _normalize_content(content)
    file_url = (file_url or "").strip() or None
    if content is None and file_url is None:
        raise ValidationFailed("Message must have content or a file")
    if content is not None and len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationFailed(f"Message exceeds {MESSAGE_MAX_LENGTH} characters")

    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)

    parent = None
    if parent_message_id is not None:
        parent = _load_message(db, message_id=parent_message_id)
        if parent.conversation_id != conversation.id:
            raise ValidationFailed("Parent message belongs to another conversation")
        if parent.parent_message_id is not None:
            raise ValidationFailed("Cannot reply to a thread reply")

    _check_send_rate(realtime, user_id=current_user_id)

    conversation_key = str(conversation.id)
    async with realtime.fanout.ordered(conversation_key):
        now = datetime.utcnow()
        try:
            sequence = messaging_repository.next_sequence(db, conversation_id=conversation.id, now=now)
            message = messaging_repository.create_message(
                db,
                conversation_id=conversation.id,
                sender_id=current_user_id,
                content=content,
                file_url=file_url,
                sequence=sequence,
                created_at=now,
                parent_message_id=parent.id if parent else None,
            )
            if parent is not None:
                messaging_repository.adjust_thread_count(db, message_id=parent.id, delta=1)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist message in {conversation_key}: {e}")
            raise Unavailable("Failed to send message")
        db.refresh(message)

        payload = serialize_message(message)
        await realtime.fanout.publish(
            Envelope(
                type=MESSAGE_CREATED,
                payload=payload,
                conversation_id=conversation_key,
                sequence=sequence,
                origin_user_id=current_user_id,
            )
        )

    logger.debug(f"Message {message.id} seq={sequence} sent to {conversation_key}")
    if parent is not None:
        _ensure_thread_subscription(db, user_id=current_user_id, message_id=parent.id)
    await record_activity(db, realtime, user_id=current_user_id)
    return payload


def get_message(db, *, current_user_id: str, message_id):
    message = _load_message(db, message_id=message_id, allow_deleted=True)
    conversation = _load_conversation(db, conversation_id=message.conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    return serialize_message(message)


def list_messages(
    db,
    *,
    current_user_id: str,
    conversation_id,
    limit: int = MESSAGE_HISTORY_LIMIT,
    before_sequence: Optional[int] = None,
    include_thread_replies: bool = False,
):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    limit = max(1, min(limit, MESSAGE_HISTORY_LIMIT))
    rows = messaging_repository.list_messages(
        db,
        conversation_id=conversation.id,
        limit=limit + 1,
        before_sequence=before_sequence,
        include_thread_replies=include_thread_replies,
    )
    has_more = len(rows) > limit
    if has_more:
        rows = rows[1:]
    return {"messages": [serialize_message(m) for m in rows], "has_more": has_more}


def _load_own_message(db, *, current_user_id: str, message_id):
    message = _load_message(db, message_id=message_id, allow_deleted=True)
    conversation = _load_conversation(db, conversation_id=message.conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    if message.sender_id != current_user_id:
        raise Unauthorized("Only the sender can change this message")
    return message, conversation


async def edit_message(db, realtime, *, current_user_id: str, message_id, content: Optional[str]):
    message, conversation = _load_own_message(db, current_user_id=current_user_id, message_id=message_id)
    if message.deleted_at is not None:
        raise NotFound("Message not found")
    content = _normalize_content(content)
    if content is None and message.file_url is None:
        raise ValidationFailed("Message must have content or a file")
    if content is not None and len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationFailed(f"Message exceeds {MESSAGE_MAX_LENGTH} characters")

    conversation_key = str(conversation.id)
    async with realtime.fanout.ordered(conversation_key):
        now = datetime.utcnow()
        try:
            sequence = messaging_repository.next_sequence(db, conversation_id=conversation.id, now=now)
            message.content = content
            message.edited_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to edit message {message.id}: {e}")
            raise Unavailable("Failed to edit message")
        db.refresh(message)

        payload = serialize_message(message)
        await realtime.fanout.publish(
            Envelope(
                type=MESSAGE_EDITED,
                payload=payload,
                conversation_id=conversation_key,
                sequence=sequence,
                origin_user_id=current_user_id,
            )
        )
    return payload


async def delete_message(db, realtime, *, current_user_id: str, message_id):
    message, conversation = _load_own_message(db, current_user_id=current_user_id, message_id=message_id)
    if message.deleted_at is not None:
        return serialize_message(message)

    conversation_key = str(conversation.id)
    async with realtime.fanout.ordered(conversation_key):
        now = datetime.utcnow()
        try:
            sequence = messaging_repository.next_sequence(db, conversation_id=conversation.id, now=now)
            message.deleted_at = now
            if message.parent_message_id is not None:
                messaging_repository.adjust_thread_count(db, message_id=message.parent_message_id, delta=-1)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to delete message {message.id}: {e}")
            raise Unavailable("Failed to delete message")
        db.refresh(message)

        await realtime.fanout.publish(
            Envelope(
                type=MESSAGE_DELETED,
                payload={
                    "id": str(message.id),
                    "conversation_id": conversation_key,
                    "parent_message_id": str(message.parent_message_id) if message.parent_message_id else None,
                    "deleted_at": _iso(message.deleted_at),
                },
                conversation_id=conversation_key,
                sequence=sequence,
                origin_user_id=current_user_id,
            )
        )
    logger.info(f"Message {message.id} deleted by {current_user_id}")
    return serialize_message(message)


# =================================
#  Threads
# =================================


def _load_thread_parent(db, *, current_user_id: str, parent_message_id, allow_deleted: bool = False):
    parent = _load_message(db, message_id=parent_message_id, allow_deleted=allow_deleted)
    if parent.parent_message_id is not None:
        raise ValidationFailed("Threads are one level deep; use the root message")
    conversation = _load_conversation(db, conversation_id=parent.conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    return parent


async def send_thread_reply(
    db, realtime, *, current_user_id: str, parent_message_id, content: Optional[str], file_url: Optional[str] = None
):
    parent = _load_thread_parent(db, current_user_id=current_user_id, parent_message_id=parent_message_id)
    return await send_message(
        db,
        realtime,
        current_user_id=current_user_id,
        conversation_id=parent.conversation_id,
        content=content,
        file_url=file_url,
        parent_message_id=parent.id,
    )


def get_thread_messages(db, *, current_user_id: str, parent_message_id, limit: int = MESSAGE_HISTORY_LIMIT):
    # Replies stay readable after the root message is deleted.
    parent = _load_thread_parent(
        db, current_user_id=current_user_id, parent_message_id=parent_message_id, allow_deleted=True
    )
    replies = messaging_repository.list_thread_replies(
        db, parent_message_id=parent.id, limit=max(1, min(limit, MESSAGE_HISTORY_LIMIT))
    )
    return {"parent": serialize_message(parent), "messages": [serialize_message(m) for m in replies]}


def get_thread_count(db, *, current_user_id: str, parent_message_id):
    # Replies stay readable after the root message is deleted.
    parent = _load_thread_parent(
        db, current_user_id=current_user_id, parent_message_id=parent_message_id, allow_deleted=True
    )
    return {
        "message_id": str(parent.id),
        "thread_count": messaging_repository.count_thread_replies(db, parent_message_id=parent.id),
    }


def _ensure_thread_subscription(db, *, user_id: str, message_id) -> None:
    if messaging_repository.get_thread_subscription(db, user_id=user_id, message_id=message_id):
        return
    messaging_repository.create_thread_subscription(db, user_id=user_id, message_id=message_id, subscribed=True)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not auto-subscribe {user_id} to thread {message_id}: {e}")


def set_thread_subscription(db, *, current_user_id: str, message_id, subscribed: bool):
    parent = _load_thread_parent(db, current_user_id=current_user_id, parent_message_id=message_id)
    subscription = messaging_repository.get_thread_subscription(db, user_id=current_user_id, message_id=parent.id)
    if subscription:
        subscription.subscribed = subscribed
        subscription.updated_at = datetime.utcnow()
    else:
        messaging_repository.create_thread_subscription(
            db, user_id=current_user_id, message_id=parent.id, subscribed=subscribed
        )
    try:
        _commit(db, action="update thread subscription")
    except IntegrityError:
        raise Conflict("Thread subscription changed concurrently; retry")
    return {"message_id": str(parent.id), "subscribed": subscribed}


# =================================
#  Reactions
# =================================


def aggregate_reactions(reactions) -> List[dict]:
    """Group reaction rows by emoji: count desc, ties in first-seen order.

    ``reactions`` must be ordered by creation time.
    """
    groups: "OrderedDict[str, List[str]]" = OrderedDict()
    for reaction in reactions:
        groups.setdefault(reaction.emoji, []).append(reaction.user_id)
    ordered = sorted(groups.items(), key=lambda item: -len(item[1]))
    return [
        {"emoji": emoji, "count": len(reactor_ids), "reactor_ids": reactor_ids}
        for emoji, reactor_ids in ordered
    ]


def _load_reactable_message(db, *, current_user_id: str, message_id):
    message = _load_message(db, message_id=message_id)
    conversation = _load_conversation(db, conversation_id=message.conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    return message


async def toggle_reaction(db, realtime, *, current_user_id: str, message_id, emoji: str):
    emoji = (emoji or "").strip()
    if not emoji:
        raise ValidationFailed("Emoji is required")
    message = _load_reactable_message(db, current_user_id=current_user_id, message_id=message_id)

    existing = messaging_repository.get_reaction(
        db, message_id=message.id, user_id=current_user_id, emoji=emoji
    )
    if existing:
        db.delete(existing)
        _commit(db, action="remove reaction")
        added = False
    else:
        messaging_repository.create_reaction(db, message_id=message.id, user_id=current_user_id, emoji=emoji)
        try:
            _commit(db, action="add reaction")
        except IntegrityError:
            # A concurrent identical add won; the reaction is present either way.
            logger.debug(f"Duplicate reaction {emoji} by {current_user_id} on {message.id}")
        added = True

    reactions = aggregate_reactions(messaging_repository.list_reactions(db, message_id=message.id))
    await realtime.fanout.publish(
        Envelope(
            type=REACTION_UPDATED,
            payload={
                "message_id": str(message.id),
                "user_id": current_user_id,
                "emoji": emoji,
                "added": added,
                "reactions": reactions,
            },
            conversation_id=str(message.conversation_id),
            origin_user_id=current_user_id,
        )
    )
    return {"message_id": str(message.id), "added": added, "reactions": reactions}


def get_message_reactions(db, *, current_user_id: str, message_id):
    message = _load_reactable_message(db, current_user_id=current_user_id, message_id=message_id)
    rows = messaging_repository.list_reactions(db, message_id=message.id)
    return {
        "message_id": str(message.id),
        "reactions": aggregate_reactions(rows),
        "my_reactions": [r.emoji for r in rows if r.user_id == current_user_id],
    }


# =================================
#  Read receipts
# =================================


def _apply_read_receipts(db, *, conversation_id, user_id: str, read_at: datetime) -> List:
    message_ids = messaging_repository.list_unread_message_ids(
        db, conversation_id=conversation_id, user_id=user_id, read_at=read_at
    )
    existing = messaging_repository.get_receipts_for_messages(db, message_ids=message_ids, user_id=user_id)
    for message_id in message_ids:
        receipt = existing.get(message_id)
        if receipt is None:
            messaging_repository.create_receipt(db, message_id=message_id, user_id=user_id, read_at=read_at)
        elif receipt.read_at < read_at:
            receipt.read_at = read_at
    return message_ids


async def mark_read(db, realtime, *, current_user_id: str, conversation_id):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)

    read_at = datetime.utcnow()
    message_ids = _apply_read_receipts(db, conversation_id=conversation.id, user_id=current_user_id, read_at=read_at)
    try:
        _commit(db, action="mark messages read")
    except IntegrityError:
        # A concurrent mark_read inserted some receipts first; retry as updates.
        message_ids = _apply_read_receipts(
            db, conversation_id=conversation.id, user_id=current_user_id, read_at=read_at
        )
        try:
            _commit(db, action="mark messages read")
        except IntegrityError:
            raise Conflict("Read receipts changed concurrently; retry")

    ids = [str(mid) for mid in message_ids]
    if ids:
        await realtime.fanout.publish(
            Envelope(
                type=MESSAGES_READ,
                payload={"user_id": current_user_id, "message_ids": ids, "read_at": _iso(read_at)},
                conversation_id=str(conversation.id),
                origin_user_id=current_user_id,
            )
        )
    return {"conversation_id": str(conversation.id), "read_at": _iso(read_at), "message_ids": ids}


def get_read_receipts(db, *, current_user_id: str, conversation_id, message_ids: Iterable[str]):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    parsed = [_parse_uuid(mid, label="message") for mid in message_ids]
    wanted = set()
    for message_id in parsed:
        message = messaging_repository.get_message(db, message_id=message_id)
        if message and message.conversation_id == conversation.id:
            wanted.add(message.id)
    receipts = messaging_repository.list_receipts(db, message_ids=wanted)
    return {
        "receipts": [
            {"message_id": str(r.message_id), "user_id": r.user_id, "read_at": _iso(r.read_at)}
            for r in receipts
        ]
    }


# =================================
#  Presence and typing
# =================================


async def publish_presence_transitions(db, realtime, transitions: List[PresenceTransition]) -> None:
    """Persist transitions to ``user_status`` and broadcast them to watchers."""
    transitions = [t for t in transitions if t is not None]
    if not transitions:
        return
    own_session = db is None
    if own_session:
        if realtime.session_factory is None:
            await realtime.broadcast_presence(transitions)
            return
        db = realtime.session_factory()
    try:
        messaging_repository.save_presence_states(db, states=[t.state for t in transitions])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist presence for {[t.user_id for t in transitions]}: {e}")
    finally:
        if own_session:
            db.close()
    await realtime.broadcast_presence(transitions)


async def record_activity(db, realtime, *, user_id: str) -> None:
    if not realtime.presence_enabled:
        return
    transition = realtime.presence.record_activity(user_id, datetime.utcnow())
    await publish_presence_transitions(db, realtime, [transition])


async def update_status(db, realtime, *, current_user_id: str, status: str):
    if not realtime.presence_enabled:
        raise Forbidden("Presence is disabled")
    try:
        transition = realtime.presence.set_status(current_user_id, status, datetime.utcnow())
    except ValueError as e:
        raise ValidationFailed(str(e))
    await publish_presence_transitions(db, realtime, [transition])
    return realtime.presence.get(current_user_id).to_dict()


async def heartbeat(db, realtime, *, current_user_id: str, active: bool = False):
    if not realtime.presence_enabled:
        raise Forbidden("Presence is disabled")
    now = datetime.utcnow()
    for session in realtime.registry.sessions_of_user(current_user_id):
        realtime.registry.touch(session.session_id)
    if active:
        transition = realtime.presence.record_activity(current_user_id, now)
    else:
        transition = realtime.presence.heartbeat(current_user_id, now)
    await publish_presence_transitions(db, realtime, [transition])
    return realtime.presence.get(current_user_id).to_dict()


def get_presence(db, realtime, *, user_ids: Iterable[str]):
    user_ids = [u for u in dict.fromkeys(user_ids) if u]
    persisted = messaging_repository.get_user_statuses(db, user_ids=user_ids)
    result = []
    for user_id in user_ids:
        state = realtime.presence.get(user_id) if realtime.presence_enabled else None
        if state is None:
            # Not tracked by this process; the persisted row is shared by all workers.
            row = persisted.get(user_id)
            state = PresenceState(
                user_id=user_id,
                status=row.status if row else OFFLINE,
                last_seen=row.last_seen if row else None,
                last_activity_at=row.last_activity_at if row else None,
            )
        result.append(state.to_dict())
    return {"presence": result}


async def send_typing(db, realtime, *, current_user_id: str, conversation_id, is_typing: bool = True):
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    await realtime.fanout.publish_typing(str(conversation.id), current_user_id, is_typing)
    if is_typing:
        await record_activity(db, realtime, user_id=current_user_id)
    return {"conversation_id": str(conversation.id), "is_typing": is_typing}


# =================================
#  Files
# =================================


async def upload_file(realtime, *, current_user_id: str, file_name: str, content_type: str, data: bytes):
    content_type = (content_type or "").split(";")[0].strip().lower()
    if content_type not in FILE_ALLOWED_TYPES:
        raise ValidationFailed(f"File type '{content_type or 'unknown'}' is not allowed")
    if not data:
        raise ValidationFailed("File is empty")
    if len(data) > FILE_MAX_BYTES:
        raise ValidationFailed(f"File exceeds {FILE_MAX_BYTES // (1024 * 1024)}MB limit")
    if realtime.storage is None:
        raise Unavailable("File storage is not configured")

    key = realtime.storage.build_key(user_id=current_user_id, file_name=file_name)
    try:
        url = await run_in_threadpool(realtime.storage.upload, data, key=key, content_type=content_type)
    except StorageError as e:
        logger.error(f"File upload failed for {current_user_id}: {e}")
        raise Unavailable("File storage is unavailable")
    return {"url": url, "file_name": file_name, "file_type": content_type, "file_size": len(data)}


# =================================
#  Realtime sessions
# =================================


def _session_view(session) -> dict:
    return {"session_id": session.session_id, "conversation_ids": sorted(session.conversation_ids)}


def _require_own_session(realtime, *, current_user_id: str, session_id: str):
    session = realtime.registry.get(session_id)
    if session is None:
        raise NotFound("Session not found")
    if session.user_id != current_user_id:
        raise Forbidden("Session belongs to another user")
    return session


async def open_stream_session(db, realtime, *, current_user_id: str, conversation_ids: Optional[List[str]] = None):
    """Open a session subscribed to the given conversations (default: all of the user's)."""
    if len(realtime.registry.sessions_of_user(current_user_id)) >= SESSION_MAX_PER_USER:
        logger.warning(f"Session limit exceeded for user {current_user_id}")
        raise RateLimited(f"Maximum {SESSION_MAX_PER_USER} concurrent streams allowed per user")

    if conversation_ids:
        conversations = [_load_conversation(db, conversation_id=cid) for cid in conversation_ids]
        for conversation in conversations:
            _require_member(db, conversation=conversation, user_id=current_user_id)
        targets = [str(c.id) for c in conversations]
    else:
        targets = [str(cid) for cid in messaging_repository.list_user_conversation_ids(db, user_id=current_user_id)]
    watched = messaging_repository.co_member_user_ids(db, user_id=current_user_id)

    session = realtime.registry.open_session(current_user_id)
    for conversation_id in targets:
        await realtime.fanout.subscribe(session.session_id, conversation_id)
    if realtime.presence_enabled:
        await realtime.fanout.watch_presence(session.session_id, watched)
    await record_activity(db, realtime, user_id=current_user_id)
    return session


async def close_stream_session(realtime, *, session_id: str):
    result = await realtime.fanout.disconnect(session_id)
    if result is None or result.user_has_other_sessions or not realtime.presence_enabled:
        return result
    transition = realtime.presence.disconnect(result.session.user_id, datetime.utcnow())
    await publish_presence_transitions(None, realtime, [transition])
    return result


async def subscribe_session(db, realtime, *, current_user_id: str, session_id: str, conversation_id):
    session = _require_own_session(realtime, current_user_id=current_user_id, session_id=session_id)
    conversation = _load_conversation(db, conversation_id=conversation_id)
    _require_member(db, conversation=conversation, user_id=current_user_id)
    await realtime.fanout.subscribe(session.session_id, str(conversation.id))
    if realtime.presence_enabled:
        members = messaging_repository.list_members(db, conversation_id=conversation.id)
        await realtime.fanout.watch_presence(
            session.session_id, [m.user_id for m in members if m.user_id != current_user_id]
        )
    return _session_view(session)


async def unsubscribe_session(realtime, *, current_user_id: str, session_id: str, conversation_id):
    session = _require_own_session(realtime, current_user_id=current_user_id, session_id=session_id)
    conversation_key = str(_parse_uuid(conversation_id, label="conversation"))
    await realtime.fanout.unsubscribe(session.session_id, conversation_key)
    return _session_view(session)


async def disconnect_session(realtime, *, current_user_id: str, session_id: str):
    _require_own_session(realtime, current_user_id=current_user_id, session_id=session_id)
    await close_stream_session(realtime, session_id=session_id)
    return {"session_id": session_id, "disconnected": True}
