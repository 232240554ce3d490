"""Chat persistence: the repository contract plus asyncpg and in-memory stores."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol

import asyncpg
import ulid

from firebird.infra.postgres import get_pool
from firebird.obs import metrics as obs_metrics

from .errors import ChatError, ForbiddenError, NotFoundError, RealtimeError, RepositoryError
from .models import (
	Chat,
	ChatMember,
	MemberRole,
	Message,
	MessageReactions,
	ReactionCounts,
	ReactionKind,
)
from .realtime import MessagePublisher

_LOG = logging.getLogger(__name__)


class ChatRepository(Protocol):
	async def list_chats_for_user(self, user_id: str) -> List[Chat]:
		...

	async def list_messages(self, chat_id: str, *, viewer_id: Optional[str] = None) -> List[Message]:
		...

	async def insert_message(self, chat_id: str, sender_id: str, body: str) -> Message:
		...

	async def toggle_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> MessageReactions:
		...

	async def list_members(self, chat_id: str) -> List[ChatMember]:
		...

	async def create_chat(
		self,
		owner_id: str,
		name: str,
		member_ids: Iterable[str],
		announcement_mode: bool,
	) -> Chat:
		...

	async def delete_chat(self, chat_id: str, requesting_user_id: str) -> None:
		...

	async def add_members(self, chat_id: str, member_ids: Iterable[str], requesting_user_id: str) -> List[ChatMember]:
		...


def next_reaction(current: Optional[ReactionKind], requested: ReactionKind) -> Optional[ReactionKind]:
	"""Same kind again clears the reaction, the other kind replaces it."""
	return None if current == requested else requested


async def _publish(publisher: Optional[MessagePublisher], message: Message) -> None:
	if publisher is None:
		return
	try:
		await publisher.publish(message)
	except RealtimeError:
		# The row is committed; subscribers catch up on their next refetch.
		_LOG.warning("chat_publish_failed", extra={"chat_id": message.chat_id, "message_id": message.id})


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class InMemoryChatRepository:
	"""Process-local store used for tests and ``CHAT_STORE=memory``."""

	def __init__(
		self,
		publisher: Optional[MessagePublisher] = None,
		*,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._lock = asyncio.Lock()
		self._publisher = publisher
		self._clock = clock
		self._chats: Dict[str, Chat] = {}
		self._members: Dict[str, Dict[str, ChatMember]] = {}
		self._messages: Dict[str, List[Message]] = {}
		self._reactions: Dict[str, Dict[str, ReactionKind]] = {}
		self._last_timestamp: Optional[datetime] = None

	def _now(self) -> datetime:
		# Timestamps within one store are strictly increasing.
		now = self._clock()
		if self._last_timestamp is not None and now <= self._last_timestamp:
			now = self._last_timestamp + timedelta(microseconds=1)
		self._last_timestamp = now
		return now

	def _require_chat(self, chat_id: str) -> Chat:
		chat = self._chats.get(chat_id)
		if chat is None:
			raise NotFoundError("chat_not_found")
		return chat

	def _require_admin(self, chat_id: str, user_id: str) -> None:
		member = self._members.get(chat_id, {}).get(user_id)
		if member is None or not member.is_admin():
			raise ForbiddenError("admin_role_required")

	def _reactions_for(self, message_id: str, viewer_id: Optional[str]) -> MessageReactions:
		by_user = self._reactions.get(message_id, {})
		kinds = list(by_user.values())
		return MessageReactions(
			counts=ReactionCounts(
				thumbs_up=kinds.count(ReactionKind.THUMBS_UP),
				thumbs_down=kinds.count(ReactionKind.THUMBS_DOWN),
			),
			user_reaction=by_user.get(viewer_id) if viewer_id else None,
		)

	def _summarise(self, chat: Chat) -> Chat:
		messages = self._messages.get(chat.id, [])
		last = max(messages, key=lambda m: m.sort_key) if messages else None
		return Chat(
			id=chat.id,
			name=chat.name,
			owner_id=chat.owner_id,
			announcement_mode=chat.announcement_mode,
			member_count=len(self._members.get(chat.id, {})),
			created_at=chat.created_at,
			last_message=last.body if last else None,
			last_message_time=last.created_at if last else None,
		)

	async def list_chats_for_user(self, user_id: str) -> List[Chat]:
		async with self._lock:
			chats = [
				self._summarise(chat)
				for chat_id, chat in self._chats.items()
				if user_id in self._members.get(chat_id, {})
			]
		chats.sort(key=lambda chat: chat.recency, reverse=True)
		return chats

	async def list_messages(self, chat_id: str, *, viewer_id: Optional[str] = None) -> List[Message]:
		async with self._lock:
			chat = self._require_chat(chat_id)
			messages = sorted(self._messages.get(chat_id, []), key=lambda m: m.sort_key)
			if not chat.announcement_mode:
				return messages
			return [
				Message(
					id=m.id,
					chat_id=m.chat_id,
					sender_id=m.sender_id,
					body=m.body,
					created_at=m.created_at,
					reactions=self._reactions_for(m.id, viewer_id),
				)
				for m in messages
			]

	async def insert_message(self, chat_id: str, sender_id: str, body: str) -> Message:
		async with self._lock:
			chat = self._require_chat(chat_id)
			if sender_id not in self._members.get(chat_id, {}):
				raise ForbiddenError("membership_required")
			if not chat.can_post(sender_id):
				raise ForbiddenError("announcement_locked")
			message = Message(
				id=str(ulid.new()),
				chat_id=chat_id,
				sender_id=sender_id,
				body=body,
				created_at=self._now(),
				reactions=MessageReactions() if chat.announcement_mode else None,
			)
			self._messages.setdefault(chat_id, []).append(message)
		await _publish(self._publisher, message)
		return message

	async def toggle_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> MessageReactions:
		kind = ReactionKind(kind)
		async with self._lock:
			target = None
			for messages in self._messages.values():
				for message in messages:
					if message.id == message_id:
						target = message
						break
				if target is not None:
					break
			if target is None:
				raise NotFoundError("message_not_found")
			if user_id not in self._members.get(target.chat_id, {}):
				raise ForbiddenError("membership_required")
			by_user = self._reactions.setdefault(message_id, {})
			updated = next_reaction(by_user.get(user_id), kind)
			if updated is None:
				by_user.pop(user_id, None)
			else:
				by_user[user_id] = updated
			return self._reactions_for(message_id, user_id)

	async def list_members(self, chat_id: str) -> List[ChatMember]:
		async with self._lock:
			self._require_chat(chat_id)
			return list(self._members.get(chat_id, {}).values())

	async def create_chat(
		self,
		owner_id: str,
		name: str,
		member_ids: Iterable[str],
		announcement_mode: bool,
	) -> Chat:
		now = self._now()
		chat = Chat(
			id=str(ulid.new()),
			name=name,
			owner_id=owner_id,
			announcement_mode=announcement_mode,
			member_count=0,
			created_at=now,
		)
		async with self._lock:
			members = {owner_id: ChatMember(chat.id, owner_id, MemberRole.ADMIN, now)}
			for user_id in member_ids:
				members.setdefault(user_id, ChatMember(chat.id, user_id, MemberRole.MEMBER, now))
			self._chats[chat.id] = chat
			self._members[chat.id] = members
			self._messages[chat.id] = []
			return self._summarise(chat)

	async def delete_chat(self, chat_id: str, requesting_user_id: str) -> None:
		async with self._lock:
			self._require_chat(chat_id)
			self._require_admin(chat_id, requesting_user_id)
			for message in self._messages.pop(chat_id, []):
				self._reactions.pop(message.id, None)
			self._members.pop(chat_id, None)
			self._chats.pop(chat_id, None)

	async def add_members(self, chat_id: str, member_ids: Iterable[str], requesting_user_id: str) -> List[ChatMember]:
		async with self._lock:
			self._require_chat(chat_id)
			self._require_admin(chat_id, requesting_user_id)
			members = self._members.setdefault(chat_id, {})
			added: List[ChatMember] = []
			now = self._now()
			for user_id in member_ids:
				if user_id in members:
					continue
				member = ChatMember(chat_id, user_id, MemberRole.MEMBER, now)
				members[user_id] = member
				added.append(member)
			return added


_CHAT_COLUMNS = """
	c.id, c.name, c.owner_id, c.announcement_mode, c.created_at,
	(SELECT COUNT(*) FROM chat_members cm WHERE cm.chat_id = c.id) AS member_count
"""


def _row_to_chat(row) -> Chat:
	return Chat(
		id=str(row["id"]),
		name=row["name"],
		owner_id=str(row["owner_id"]),
		announcement_mode=bool(row["announcement_mode"]),
		member_count=int(row["member_count"]),
		created_at=row["created_at"],
		last_message=row.get("last_message"),
		last_message_time=row.get("last_message_time"),
	)


def _row_to_reactions(row) -> MessageReactions:
	user_reaction = row["user_reaction"]
	return MessageReactions(
		counts=ReactionCounts(thumbs_up=int(row["thumbs_up"]), thumbs_down=int(row["thumbs_down"])),
		user_reaction=ReactionKind(user_reaction) if user_reaction else None,
	)


def _row_to_message(row) -> Message:
	return Message(
		id=str(row["id"]),
		chat_id=str(row["chat_id"]),
		sender_id=str(row["sender_id"]),
		body=row["body"],
		created_at=row["created_at"],
		reactions=_row_to_reactions(row) if row["announcement_mode"] else None,
	)


def _row_to_member(row) -> ChatMember:
	return ChatMember(
		chat_id=str(row["chat_id"]),
		user_id=str(row["user_id"]),
		role=MemberRole(row["role"]),
		joined_at=row["joined_at"],
	)


class PostgresChatRepository:
	"""asyncpg-backed repository. Driver and connectivity failures surface as RepositoryError."""

	def __init__(self, pool: Optional[asyncpg.Pool] = None, *, publisher: Optional[MessagePublisher] = None) -> None:
		self._pool = pool
		self._publisher = publisher

	async def _get_pool(self) -> asyncpg.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	@asynccontextmanager
	async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = await self._get_pool()
			async with pool.acquire() as conn:
				yield conn
		except ChatError:
			raise
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
			obs_metrics.inc_repository_error(operation)
			_LOG.warning("chat_repository_failed", extra={"operation": operation}, exc_info=True)
			raise RepositoryError() from exc

	async def _require_admin(self, conn: asyncpg.Connection, chat_id: str, user_id: str) -> None:
		exists = await conn.fetchval("SELECT 1 FROM chats WHERE id = $1", chat_id)
		if not exists:
			raise NotFoundError("chat_not_found")
		role = await conn.fetchval(
			"SELECT role FROM chat_members WHERE chat_id = $1 AND user_id = $2",
			chat_id,
			user_id,
		)
		if role != MemberRole.ADMIN.value:
			raise ForbiddenError("admin_role_required")

	async def list_chats_for_user(self, user_id: str) -> List[Chat]:
		async with self._connection("list_chats") as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_CHAT_COLUMNS},
					last.body AS last_message,
					last.created_at AS last_message_time
				FROM chats c
				JOIN chat_members me ON me.chat_id = c.id AND me.user_id = $1
				LEFT JOIN LATERAL (
					SELECT body, created_at
					FROM chat_messages
					WHERE chat_id = c.id
					ORDER BY created_at DESC, id DESC
					LIMIT 1
				) last ON TRUE
				ORDER BY COALESCE(last.created_at, c.created_at) DESC
				""",
				user_id,
			)
		return [_row_to_chat(row) for row in rows]

	async def list_messages(self, chat_id: str, *, viewer_id: Optional[str] = None) -> List[Message]:
		async with self._connection("list_messages") as conn:
			exists = await conn.fetchval("SELECT 1 FROM chats WHERE id = $1", chat_id)
			if not exists:
				raise NotFoundError("chat_not_found")
			rows = await conn.fetch(
				"""
				SELECT m.id, m.chat_id, m.sender_id, m.body, m.created_at, c.announcement_mode,
					COUNT(r.message_id) FILTER (WHERE r.kind = 'thumbs_up') AS thumbs_up,
					COUNT(r.message_id) FILTER (WHERE r.kind = 'thumbs_down') AS thumbs_down,
					MAX(r.kind) FILTER (WHERE r.user_id = $2::text) AS user_reaction
				FROM chat_messages m
				JOIN chats c ON c.id = m.chat_id
				LEFT JOIN chat_message_reactions r ON r.message_id = m.id
				WHERE m.chat_id = $1
				GROUP BY m.id, c.announcement_mode
				ORDER BY m.created_at ASC, m.id ASC
				""",
				chat_id,
				viewer_id,
			)
		return [_row_to_message(row) for row in rows]

	async def insert_message(self, chat_id: str, sender_id: str, body: str) -> Message:
		async with self._connection("insert_message") as conn:
			async with conn.transaction():
				chat = await conn.fetchrow(
					"SELECT owner_id, announcement_mode FROM chats WHERE id = $1 FOR SHARE",
					chat_id,
				)
				if chat is None:
					raise NotFoundError("chat_not_found")
				is_member = await conn.fetchval(
					"SELECT 1 FROM chat_members WHERE chat_id = $1 AND user_id = $2",
					chat_id,
					sender_id,
				)
				if not is_member:
					raise ForbiddenError("membership_required")
				if chat["announcement_mode"] and str(chat["owner_id"]) != sender_id:
					raise ForbiddenError("announcement_locked")
				message_id = str(ulid.new())
				created_at = await conn.fetchval(
					"""
					INSERT INTO chat_messages (id, chat_id, sender_id, body)
					VALUES ($1, $2, $3, $4)
					RETURNING created_at
					""",
					message_id,
					chat_id,
					sender_id,
					body,
				)
		message = Message(
			id=message_id,
			chat_id=chat_id,
			sender_id=sender_id,
			body=body,
			created_at=created_at,
			reactions=MessageReactions() if chat["announcement_mode"] else None,
		)
		await _publish(self._publisher, message)
		return message

	async def toggle_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> MessageReactions:
		kind = ReactionKind(kind)
		async with self._connection("toggle_reaction") as conn:
			async with conn.transaction():
				chat_id = await conn.fetchval("SELECT chat_id FROM chat_messages WHERE id = $1", message_id)
				if chat_id is None:
					raise NotFoundError("message_not_found")
				is_member = await conn.fetchval(
					"SELECT 1 FROM chat_members WHERE chat_id = $1 AND user_id = $2",
					chat_id,
					user_id,
				)
				if not is_member:
					raise ForbiddenError("membership_required")
				current = await conn.fetchval(
					"""
					SELECT kind FROM chat_message_reactions
					WHERE message_id = $1 AND user_id = $2
					FOR UPDATE
					""",
					message_id,
					user_id,
				)
				updated = next_reaction(ReactionKind(current) if current else None, kind)
				if updated is None:
					await conn.execute(
						"DELETE FROM chat_message_reactions WHERE message_id = $1 AND user_id = $2",
						message_id,
						user_id,
					)
				else:
					await conn.execute(
						"""
						INSERT INTO chat_message_reactions (message_id, user_id, kind)
						VALUES ($1, $2, $3)
						ON CONFLICT (message_id, user_id) DO UPDATE SET kind = EXCLUDED.kind
						""",
						message_id,
						user_id,
						updated.value,
					)
				row = await conn.fetchrow(
					"""
					SELECT
						COUNT(*) FILTER (WHERE kind = 'thumbs_up') AS thumbs_up,
						COUNT(*) FILTER (WHERE kind = 'thumbs_down') AS thumbs_down,
						MAX(kind) FILTER (WHERE user_id = $2) AS user_reaction
					FROM chat_message_reactions
					WHERE message_id = $1
					""",
					message_id,
					user_id,
				)
		return _row_to_reactions(row)

	async def list_members(self, chat_id: str) -> List[ChatMember]:
		async with self._connection("list_members") as conn:
			exists = await conn.fetchval("SELECT 1 FROM chats WHERE id = $1", chat_id)
			if not exists:
				raise NotFoundError("chat_not_found")
			rows = await conn.fetch(
				"""
				SELECT chat_id, user_id, role, joined_at
				FROM chat_members
				WHERE chat_id = $1
				ORDER BY joined_at ASC, user_id ASC
				""",
				chat_id,
			)
		return [_row_to_member(row) for row in rows]

	async def create_chat(
		self,
		owner_id: str,
		name: str,
		member_ids: Iterable[str],
		announcement_mode: bool,
	) -> Chat:
		chat_id = str(ulid.new())
		others = [user_id for user_id in dict.fromkeys(member_ids) if user_id != owner_id]
		async with self._connection("create_chat") as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO chats (id, name, owner_id, announcement_mode)
					VALUES ($1, $2, $3, $4)
					""",
					chat_id,
					name,
					owner_id,
					announcement_mode,
				)
				await conn.execute(
					"INSERT INTO chat_members (chat_id, user_id, role) VALUES ($1, $2, 'admin')",
					chat_id,
					owner_id,
				)
				if others:
					await conn.executemany(
						"INSERT INTO chat_members (chat_id, user_id, role) VALUES ($1, $2, 'member')",
						[(chat_id, user_id) for user_id in others],
					)
				row = await conn.fetchrow(f"SELECT {_CHAT_COLUMNS} FROM chats c WHERE c.id = $1", chat_id)
		return _row_to_chat(row)

	async def delete_chat(self, chat_id: str, requesting_user_id: str) -> None:
		async with self._connection("delete_chat") as conn:
			async with conn.transaction():
				await self._require_admin(conn, chat_id, requesting_user_id)
				await conn.execute("DELETE FROM chats WHERE id = $1", chat_id)

	async def add_members(self, chat_id: str, member_ids: Iterable[str], requesting_user_id: str) -> List[ChatMember]:
		user_ids = list(dict.fromkeys(member_ids))
		async with self._connection("add_members") as conn:
			async with conn.transaction():
				await self._require_admin(conn, chat_id, requesting_user_id)
				if not user_ids:
					return []
				rows = await conn.fetch(
					"""
					INSERT INTO chat_members (chat_id, user_id, role)
					SELECT $1, user_id, 'member' FROM unnest($2::text[]) AS user_id
					ON CONFLICT (chat_id, user_id) DO NOTHING
					RETURNING chat_id, user_id, role, joined_at
					""",
					chat_id,
					user_ids,
				)
		return [_row_to_member(row) for row in rows]
