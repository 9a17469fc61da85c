"""Messaging/Realtime schemas."""

from typing import List, Optional

from pydantic import BaseModel, Field

from config import EMOJI_MAX_LENGTH, GROUP_TITLE_MAX_LENGTH, MESSAGE_MAX_LENGTH


class CreateDMRequest(BaseModel):
    peer_user_id: str = Field(..., min_length=1, example="U2abc")


class CreateGroupRequest(BaseModel):
    title: str = Field(..., max_length=GROUP_TITLE_MAX_LENGTH, example="Team")
    member_ids: List[str] = Field(default_factory=list, example=["U2abc", "U2def"])


class AddMembersRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, example=["U2ghi"])


class MemberOut(BaseModel):
    user_id: str
    role: str
    joined_at: str


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    file_url: Optional[str] = None
    parent_message_id: Optional[str] = None
    sequence: int
    thread_count: int = 0
    created_at: str
    edited_at: Optional[str] = None
    deleted_at: Optional[str] = None


class ConversationOut(BaseModel):
    id: str
    kind: str
    title: Optional[str] = None
    created_by: str
    created_at: str
    updated_at: str
    last_sequence: int
    members: List[MemberOut] = []
    last_message: Optional[MessageOut] = None


class ConversationListResponse(BaseModel):
    conversations: List[ConversationOut]


class SendMessageRequest(BaseModel):
    content: Optional[str] = Field(None, max_length=MESSAGE_MAX_LENGTH, example="hello")
    file_url: Optional[str] = Field(None, description="URL returned by POST /files")

    class Config:
        json_schema_extra = {"example": {"content": "hello", "file_url": None}}


class EditMessageRequest(BaseModel):
    content: str = Field(..., max_length=MESSAGE_MAX_LENGTH, example="hello (edited)")


class MessageListResponse(BaseModel):
    messages: List[MessageOut]
    has_more: bool


class ThreadCountResponse(BaseModel):
    message_id: str
    thread_count: int


class ThreadSubscriptionResponse(BaseModel):
    message_id: str
    subscribed: bool


class ToggleReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=EMOJI_MAX_LENGTH, example="👍")


class ReactionGroup(BaseModel):
    emoji: str
    count: int
    reactor_ids: List[str]


class ReactionsResponse(BaseModel):
    message_id: str
    reactions: List[ReactionGroup]
    my_reactions: List[str] = []


class MarkReadResponse(BaseModel):
    conversation_id: str
    read_at: str
    message_ids: List[str]


class ReadReceiptOut(BaseModel):
    message_id: str
    user_id: str
    read_at: str


class ReadReceiptsResponse(BaseModel):
    receipts: List[ReadReceiptOut]


class TypingRequest(BaseModel):
    is_typing: bool = True


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., pattern="^(online|away|offline)$", example="away")


class HeartbeatRequest(BaseModel):
    active: bool = Field(False, description="True when the user interacted since the last heartbeat")


class PresenceOut(BaseModel):
    user_id: str
    status: str
    last_seen: Optional[str] = None
    last_activity_at: Optional[str] = None


class PresenceListResponse(BaseModel):
    presence: List[PresenceOut]


class FileUploadResponse(BaseModel):
    url: str
    file_name: str
    file_type: str
    file_size: int


class SubscribeRequest(BaseModel):
    conversation_id: str


class SessionSubscriptionsResponse(BaseModel):
    session_id: str
    conversation_ids: List[str]


class DMConversationOut(ConversationOut):
    created: bool


class MembersChangedResponse(BaseModel):
    conversation_id: str
    members: List[MemberOut]
    added: List[str] = []
    removed: Optional[str] = None
    promoted: Optional[str] = None


class ThreadMessagesResponse(BaseModel):
    parent: MessageOut
    messages: List[MessageOut]


class ToggleReactionResponse(BaseModel):
    message_id: str
    added: bool
    reactions: List[ReactionGroup]


class TypingResponse(BaseModel):
    conversation_id: str
    is_typing: bool


class DisconnectResponse(BaseModel):
    session_id: str
    disconnected: bool
