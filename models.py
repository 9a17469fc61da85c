from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Text, UniqueConstraint, CheckConstraint, Index, Uuid,
    Enum as SQLEnum,
)
import uuid
from sqlalchemy.orm import relationship
from core.db import Base
from datetime import datetime

# User ids are opaque strings issued by the identity provider (Descope userId).
USER_ID_LENGTH = 128

# =================================
#  Conversations Table
# =================================
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = Column(SQLEnum('dm', 'group', name='conversationkind'), nullable=False)
    title = Column(String, nullable=True)  # groups only
    created_by = Column(String(USER_ID_LENGTH), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    last_sequence = Column(Integer, nullable=False, default=0)  # per-conversation event counter
    dm_pair_key = Column(String, unique=True, nullable=True)  # "<low>:<high>" for DMs

    # Relationships
    members = relationship("ConversationMember", back_populates="conversation")
    messages = relationship("Message", back_populates="conversation")

# =================================
#  Conversation Members Table
# =================================
class ConversationMember(Base):
    __tablename__ = "conversation_members"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(String(USER_ID_LENGTH), nullable=False, index=True)
    role = Column(SQLEnum('admin', 'member', name='memberrole'), nullable=False, default='member')
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="members")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'user_id', name='uq_conversation_members_conversation_user'),
    )

# =================================
#  Messages Table
# =================================
class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(USER_ID_LENGTH), nullable=False, index=True)
    content = Column(Text, nullable=True)
    file_url = Column(String, nullable=True)
    parent_message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=True, index=True)
    sequence = Column(Integer, nullable=False)
    thread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    edited_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)  # tombstone

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    parent = relationship("Message", remote_side=[id], backref="replies")
    reactions = relationship("MessageReaction", back_populates="message")
    read_receipts = relationship("ReadReceipt", back_populates="message")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'sequence', name='uq_messages_conversation_sequence'),
        CheckConstraint('content IS NOT NULL OR file_url IS NOT NULL', name='ck_messages_content_or_file'),
    )

# =================================
#  Message Reactions Table
# =================================
class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(String(USER_ID_LENGTH), nullable=False)
    emoji = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    message = relationship("Message", back_populates="reactions")

    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_message_reactions_message_user_emoji'),
    )

# =================================
#  Read Receipts Table
# =================================
class ReadReceipt(Base):
    __tablename__ = "read_receipts"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=False)
    user_id = Column(String(USER_ID_LENGTH), nullable=False, index=True)
    read_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    message = relationship("Message", back_populates="read_receipts")

    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', name='uq_read_receipts_message_user'),
    )

# =================================
#  Thread Subscriptions Table
# =================================
class ThreadSubscription(Base):
    __tablename__ = "thread_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(USER_ID_LENGTH), nullable=False)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=False, index=True)
    subscribed = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'message_id', name='uq_thread_subscriptions_user_message'),
    )

# =================================
#  User Status (presence) Table
# =================================
class UserStatus(Base):
    __tablename__ = "user_status"

    user_id = Column(String(USER_ID_LENGTH), primary_key=True)
    status = Column(SQLEnum('online', 'away', 'offline', name='presencestatus'), nullable=False, default='offline')
    last_seen = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


Index('ix_messages_conversation_created', Message.conversation_id, Message.created_at)
