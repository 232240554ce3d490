"""Pydantic schemas for the chat REST and Socket.IO transport."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import Chat, ChatMember, Message, MessageReactions, ReactionKind


class ReactionCountsResponse(BaseModel):
	thumbs_up: int = 0
	thumbs_down: int = 0


class ReactionsResponse(BaseModel):
	counts: ReactionCountsResponse
	user_reaction: Optional[ReactionKind] = None

	@classmethod
	def from_model(cls, reactions: MessageReactions) -> "ReactionsResponse":
		return cls(
			counts=ReactionCountsResponse(
				thumbs_up=reactions.counts.thumbs_up,
				thumbs_down=reactions.counts.thumbs_down,
			),
			user_reaction=reactions.user_reaction,
		)


class MessageResponse(BaseModel):
	id: str = Field(..., examples=["01HZY5AJ6HT7PM1F8M3X2W8Z9V"])
	chat_id: str
	sender_id: str
	body: str
	created_at: datetime
	reactions: Optional[ReactionsResponse] = None

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			chat_id=message.chat_id,
			sender_id=message.sender_id,
			body=message.body,
			created_at=message.created_at,
			reactions=ReactionsResponse.from_model(message.reactions) if message.reactions else None,
		)


class MessageListResponse(BaseModel):
	chat_id: str
	items: List[MessageResponse]


class ChatResponse(BaseModel):
	id: str
	name: str
	owner_id: str
	announcement_mode: bool
	member_count: int
	created_at: datetime
	last_message: Optional[str] = None
	last_message_time: Optional[datetime] = None
	unread: bool = False

	@classmethod
	def from_model(cls, chat: Chat) -> "ChatResponse":
		return cls(
			id=chat.id,
			name=chat.name,
			owner_id=chat.owner_id,
			announcement_mode=chat.announcement_mode,
			member_count=chat.member_count,
			created_at=chat.created_at,
			last_message=chat.last_message,
			last_message_time=chat.last_message_time,
			unread=chat.unread,
		)


class ChatListResponse(BaseModel):
	items: List[ChatResponse]


class MemberResponse(BaseModel):
	chat_id: str
	user_id: str
	role: str
	joined_at: Optional[datetime] = None

	@classmethod
	def from_model(cls, member: ChatMember) -> "MemberResponse":
		return cls(
			chat_id=member.chat_id,
			user_id=member.user_id,
			role=member.role.value,
			joined_at=member.joined_at,
		)


class MemberListResponse(BaseModel):
	chat_id: str
	items: List[MemberResponse]


# Socket payloads. Body length and emptiness are checked by the session so the
# error codes match between transports.


class SelectChatPayload(BaseModel):
	chat_id: str = Field(..., min_length=1)


class SendMessagePayload(BaseModel):
	body: str = ""


class ReactPayload(BaseModel):
	message_id: str = Field(..., min_length=1)
	kind: ReactionKind


class CreateChatPayload(BaseModel):
	name: str = ""
	member_ids: List[str] = Field(default_factory=list)
	announcement_mode: bool = False


class AddMembersPayload(BaseModel):
	chat_id: str = Field(..., min_length=1)
	member_ids: List[str] = Field(default_factory=list)


class SearchPayload(BaseModel):
	term: str = ""
