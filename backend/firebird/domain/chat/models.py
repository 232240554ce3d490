"""Domain models for team chat."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Tuple


class ReactionKind(str, Enum):
	THUMBS_UP = "thumbs_up"
	THUMBS_DOWN = "thumbs_down"


class MemberRole(str, Enum):
	ADMIN = "admin"
	MEMBER = "member"


@dataclass(slots=True, frozen=True)
class ReactionCounts:
	thumbs_up: int = 0
	thumbs_down: int = 0

	def to_dict(self) -> dict:
		return {"thumbs_up": self.thumbs_up, "thumbs_down": self.thumbs_down}


@dataclass(slots=True, frozen=True)
class MessageReactions:
	"""Reaction totals for a message plus the viewing user's own reaction."""

	counts: ReactionCounts = field(default_factory=ReactionCounts)
	user_reaction: Optional[ReactionKind] = None

	def to_dict(self) -> dict:
		return {
			"counts": self.counts.to_dict(),
			"user_reaction": self.user_reaction.value if self.user_reaction else None,
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "MessageReactions":
		counts = data.get("counts") or {}
		user_reaction = data.get("user_reaction")
		return cls(
			counts=ReactionCounts(
				thumbs_up=int(counts.get("thumbs_up", 0)),
				thumbs_down=int(counts.get("thumbs_down", 0)),
			),
			user_reaction=ReactionKind(user_reaction) if user_reaction else None,
		)


@dataclass(slots=True, frozen=True)
class Message:
	"""A chat message. Messages are never edited once created."""

	id: str
	chat_id: str
	sender_id: str
	body: str
	created_at: datetime
	reactions: Optional[MessageReactions] = None

	@property
	def sort_key(self) -> Tuple[datetime, str]:
		return (self.created_at, self.id)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"chat_id": self.chat_id,
			"sender_id": self.sender_id,
			"body": self.body,
			"created_at": self.created_at.isoformat(),
			"reactions": self.reactions.to_dict() if self.reactions else None,
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "Message":
		created_at = data["created_at"]
		if isinstance(created_at, str):
			created_at = datetime.fromisoformat(created_at)
		reactions = data.get("reactions")
		return cls(
			id=str(data["id"]),
			chat_id=str(data["chat_id"]),
			sender_id=str(data["sender_id"]),
			body=str(data["body"]),
			created_at=created_at,
			reactions=MessageReactions.from_dict(reactions) if reactions else None,
		)


@dataclass(slots=True, frozen=True)
class Chat:
	"""A conversation plus the summary fields derived from its latest message."""

	id: str
	name: str
	owner_id: str
	announcement_mode: bool
	member_count: int
	created_at: datetime
	last_message: Optional[str] = None
	last_message_time: Optional[datetime] = None
	unread: bool = False

	@property
	def recency(self) -> datetime:
		return self.last_message_time or self.created_at

	def can_post(self, user_id: str) -> bool:
		return not self.announcement_mode or self.owner_id == user_id


@dataclass(slots=True, frozen=True)
class ChatMember:
	chat_id: str
	user_id: str
	role: MemberRole
	joined_at: Optional[datetime] = None

	def is_admin(self) -> bool:
		return self.role is MemberRole.ADMIN
