"""Per-connection chat state: chat list, open conversation and realtime subscription."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from firebird.infra.auth import AuthenticatedUser
from firebird.obs import metrics as obs_metrics
from firebird.settings import settings

from .buffer import MessageOrderingBuffer
from .chat_list import ChatListAggregator
from .errors import ChatError, ForbiddenError, NotFoundError, RealtimeError, ValidationError
from .models import Chat, ChatMember, Message, MessageReactions, ReactionKind
from .realtime import RealtimeChannel, SubscriptionHandle
from .repo import ChatRepository

_LOG = logging.getLogger(__name__)

TOPIC_MESSAGES = "messages"
TOPIC_CHATS = "chats"

OnChange = Callable[[str], Awaitable[None]]


class BufferState(str, Enum):
	EMPTY = "empty"
	LOADING = "loading"
	LOADED = "loaded"
	ERROR = "error"


def _clean_ids(values: Iterable[object]) -> List[str]:
	cleaned = (str(value).strip() for value in values if value is not None)
	return [value for value in dict.fromkeys(cleaned) if value]


class ChatSession:
	"""State of one connected user.

	Optimistic sends and realtime echoes both feed the same idempotent merge,
	so whichever arrives first wins and the other is a no-op. History fetches
	carry a generation number; a fetch that resolves after the user switched
	chats again is dropped. ``on_change`` is awaited with ``TOPIC_MESSAGES`` or
	``TOPIC_CHATS`` whenever the corresponding view changes.
	"""

	def __init__(
		self,
		user: AuthenticatedUser,
		repository: ChatRepository,
		channel: RealtimeChannel,
		*,
		on_change: Optional[OnChange] = None,
		max_body_length: Optional[int] = None,
	) -> None:
		self.user = user
		self._repository = repository
		self._channel = channel
		self._on_change = on_change
		self._max_body_length = max_body_length or settings.chat_body_max_length
		self._chats = ChatListAggregator(user.id)
		self._chats_state = BufferState.EMPTY
		self._buffer = MessageOrderingBuffer()
		self._buffer_state = BufferState.EMPTY
		self._selected_chat_id: Optional[str] = None
		self._pending: List[Message] = []
		self._generation = 0
		self._chats_generation = 0
		self._subscription: Optional[SubscriptionHandle] = None
		self._subscription_lock = asyncio.Lock()
		self._realtime_active = False
		self._last_error: Optional[ChatError] = None
		self._closed = False

	@property
	def messages(self) -> Tuple[Message, ...]:
		return self._buffer.messages

	@property
	def chats(self) -> List[Chat]:
		return self._chats.chats

	@property
	def selected_chat_id(self) -> Optional[str]:
		return self._selected_chat_id

	@property
	def selected_chat(self) -> Optional[Chat]:
		return self._chats.get(self._selected_chat_id)

	@property
	def buffer_state(self) -> BufferState:
		return self._buffer_state

	@property
	def chats_state(self) -> BufferState:
		return self._chats_state

	@property
	def realtime_active(self) -> bool:
		return self._realtime_active

	@property
	def last_error(self) -> Optional[ChatError]:
		return self._last_error

	@property
	def subscribed_chat_ids(self) -> frozenset:
		return self._subscription.chat_ids if self._subscription else frozenset()

	async def _notify(self, topic: str) -> None:
		if self._on_change is not None and not self._closed:
			await self._on_change(topic)

	async def open(self) -> List[Chat]:
		return await self.refresh_chats()

	def _drop_stale_chats(self, previous: BufferState) -> List[Chat]:
		obs_metrics.inc_stale_fetch()
		_LOG.debug("chat_session_stale_chat_list", extra={"user_id": self.user.id})
		if self._closed:
			self._chats_state = previous
		return self._chats.chats

	async def refresh_chats(self) -> List[Chat]:
		"""Refetch the chat list and resubscribe if its id set changed.

		Like history fetches, each refetch carries a generation number. One
		that resolves after a newer refetch started (or after close) is
		dropped and the current list is returned unchanged.
		"""
		self._chats_generation += 1
		generation = self._chats_generation
		previous = self._chats_state
		self._chats_state = BufferState.LOADING
		try:
			chats = await self._repository.list_chats_for_user(self.user.id)
		except ChatError as exc:
			if generation != self._chats_generation:
				return self._drop_stale_chats(previous)
			self._chats_state = BufferState.ERROR
			self._last_error = exc
			await self._notify(TOPIC_CHATS)
			raise
		if generation != self._chats_generation:
			return self._drop_stale_chats(previous)
		self._chats.load(chats)
		self._chats_state = BufferState.LOADED
		if self._selected_chat_id is not None and self._chats.get(self._selected_chat_id) is None:
			await self._clear_selection()
		await self._sync_subscription()
		await self._notify(TOPIC_CHATS)
		return self._chats.chats

	async def _sync_subscription(self) -> None:
		async with self._subscription_lock:
			if self._closed:
				return
			chat_ids = self._chats.chat_ids
			current = self._subscription
			if current is not None and current.chat_ids == chat_ids and self._realtime_active:
				return
			if current is not None:
				self._subscription = None
				await self._channel.unsubscribe(current)
				obs_metrics.inc_resubscribe()
			self._realtime_active = False
			if not chat_ids:
				return
			try:
				self._subscription = await self._channel.subscribe(
					chat_ids,
					self._on_insert,
					on_error=self._on_realtime_error,
				)
			except RealtimeError:
				_LOG.warning("chat_session_subscribe_failed", extra={"user_id": self.user.id}, exc_info=True)
				return
			self._realtime_active = True

	def _on_realtime_error(self, exc: Exception) -> None:
		# Missed inserts are recovered by the next full refetch.
		self._realtime_active = False
		_LOG.warning("chat_session_realtime_lost", extra={"user_id": self.user.id, "error": type(exc).__name__})

	def _absorb(self, message: Message) -> Tuple[bool, bool]:
		"""Merge one observed message into the open buffer and the chat list."""
		merged = False
		if message.chat_id == self._selected_chat_id:
			if self._buffer_state is BufferState.LOADING:
				self._pending.append(message)
			elif self._buffer_state is BufferState.LOADED:
				merged = self._buffer.merge(message, self._selected_chat_id)
		listed = self._chats.apply_new_message(message.chat_id, message, open_chat_id=self._selected_chat_id)
		return merged, listed

	async def _on_insert(self, message: Message) -> None:
		if self._closed:
			return
		merged, listed = self._absorb(message)
		if merged:
			outcome = "merged"
		elif message.chat_id == self._selected_chat_id:
			outcome = "duplicate" if self._buffer_state is BufferState.LOADED else "deferred"
		else:
			outcome = "other_chat"
		obs_metrics.inc_realtime_event(outcome)
		if merged:
			await self._notify(TOPIC_MESSAGES)
		if listed:
			await self._notify(TOPIC_CHATS)

	async def _clear_selection(self) -> None:
		self._generation += 1
		self._selected_chat_id = None
		self._buffer = MessageOrderingBuffer()
		self._buffer_state = BufferState.EMPTY
		self._pending = []
		await self._notify(TOPIC_MESSAGES)

	async def select_chat(self, chat_id: str) -> bool:
		"""Open ``chat_id`` and load its history.

		Returns False when a newer selection superseded this fetch.
		"""
		if self._chats.get(chat_id) is None:
			raise NotFoundError("chat_not_found")
		self._generation += 1
		generation = self._generation
		self._selected_chat_id = chat_id
		self._buffer = MessageOrderingBuffer(chat_id)
		self._buffer_state = BufferState.LOADING
		self._pending = []
		self._last_error = None
		if self._chats.mark_read(chat_id):
			await self._notify(TOPIC_CHATS)
		await self._notify(TOPIC_MESSAGES)
		try:
			messages = await self._repository.list_messages(chat_id, viewer_id=self.user.id)
		except ChatError as exc:
			if generation != self._generation:
				obs_metrics.inc_stale_fetch()
				return False
			self._buffer_state = BufferState.ERROR
			self._last_error = exc
			await self._notify(TOPIC_MESSAGES)
			raise
		if generation != self._generation or self._closed:
			obs_metrics.inc_stale_fetch()
			_LOG.debug("chat_session_stale_fetch", extra={"chat_id": chat_id})
			return False
		buffer = MessageOrderingBuffer.load(chat_id, messages)
		for message in self._pending:
			buffer.merge(message, chat_id)
		self._pending = []
		self._buffer = buffer
		self._buffer_state = BufferState.LOADED
		await self._notify(TOPIC_MESSAGES)
		return True

	async def retry(self) -> None:
		"""Repeat whichever fetch last failed."""
		if self._chats_state is BufferState.ERROR:
			await self.refresh_chats()
		if self._buffer_state is BufferState.ERROR and self._selected_chat_id is not None:
			await self.select_chat(self._selected_chat_id)

	async def send_message(self, body: str) -> Message:
		chat_id = self._selected_chat_id
		if chat_id is None:
			raise ValidationError("no_chat_selected")
		text = (body or "").strip()
		if not text:
			obs_metrics.inc_chat_send("invalid")
			raise ValidationError("empty_body")
		if len(text) > self._max_body_length:
			obs_metrics.inc_chat_send("invalid")
			raise ValidationError("body_too_long")
		chat = self._chats.get(chat_id)
		if chat is not None and not chat.can_post(self.user.id):
			obs_metrics.inc_chat_send("locked")
			raise ForbiddenError("announcement_locked")
		try:
			message = await self._repository.insert_message(chat_id, self.user.id, text)
		except ChatError:
			obs_metrics.inc_chat_send("error")
			raise
		obs_metrics.inc_chat_send("ok")
		merged, listed = self._absorb(message)
		if merged:
			await self._notify(TOPIC_MESSAGES)
		if listed:
			await self._notify(TOPIC_CHATS)
		return message

	async def toggle_reaction(self, message_id: str, kind: ReactionKind | str) -> MessageReactions:
		"""Toggle the user's reaction; the buffer only changes once the server answers."""
		chat = self.selected_chat
		if chat is None:
			raise ValidationError("no_chat_selected")
		if not chat.announcement_mode:
			raise ValidationError("reactions_disabled")
		try:
			kind = ReactionKind(kind)
		except ValueError:
			raise ValidationError("invalid_reaction") from None
		generation = self._generation
		try:
			reactions = await self._repository.toggle_reaction(message_id, self.user.id, kind)
		except ChatError:
			obs_metrics.inc_reaction_toggle("error")
			raise
		obs_metrics.inc_reaction_toggle("ok")
		if generation == self._generation and self._buffer.update_reaction(message_id, reactions):
			await self._notify(TOPIC_MESSAGES)
		return reactions

	async def create_chat(self, name: str, member_ids: Iterable[object], *, announcement_mode: bool = False) -> Chat:
		if not self.user.is_privileged():
			raise ForbiddenError("privileged_role_required")
		title = (name or "").strip()
		if not title:
			raise ValidationError("empty_chat_name")
		members = [user_id for user_id in _clean_ids(member_ids) if user_id != self.user.id]
		if not members:
			raise ValidationError("no_members")
		chat = await self._repository.create_chat(self.user.id, title, members, announcement_mode)
		_LOG.info("chat_created", extra={"chat_id": chat.id, "user_id": self.user.id})
		await self.refresh_chats()
		return chat

	async def delete_chat(self, chat_id: str) -> None:
		await self._repository.delete_chat(chat_id, self.user.id)
		_LOG.info("chat_deleted", extra={"chat_id": chat_id, "user_id": self.user.id})
		if chat_id == self._selected_chat_id:
			await self._clear_selection()
		await self.refresh_chats()

	async def add_members(self, chat_id: str, member_ids: Iterable[object]) -> List[ChatMember]:
		members = _clean_ids(member_ids)
		if not members:
			raise ValidationError("no_members")
		added = await self._repository.add_members(chat_id, members, self.user.id)
		await self.refresh_chats()
		return added

	async def list_members(self, chat_id: str) -> List[ChatMember]:
		if self._chats.get(chat_id) is None:
			raise ForbiddenError("membership_required")
		return await self._repository.list_members(chat_id)

	def search(self, term: str) -> List[Chat]:
		return self._chats.search(term)

	async def close(self) -> None:
		"""Drop the subscription and invalidate any in-flight fetch."""
		self._closed = True
		self._generation += 1
		self._chats_generation += 1
		async with self._subscription_lock:
			current, self._subscription = self._subscription, None
			self._realtime_active = False
			if current is not None:
				await self._channel.unsubscribe(current)
