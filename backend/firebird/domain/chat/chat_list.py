"""Chat list summaries kept in recency order."""

from __future__ import annotations

from dataclasses import replace
from typing import FrozenSet, Iterable, List, Optional, Sequence

from .models import Chat, Message


def sort_by_recency(chats: Iterable[Chat]) -> List[Chat]:
	"""Most recent first; ties keep their previous relative order."""
	return sorted(chats, key=lambda chat: chat.recency, reverse=True)


def apply_new_message(
	chats: Sequence[Chat],
	chat_id: str,
	message: Message,
	*,
	mark_unread: bool = False,
) -> List[Chat]:
	"""Return a new list reflecting ``message`` as the latest in ``chat_id``.

	Unknown chat ids return the input unchanged. A message older than the
	entry's current summary does not regress it.
	"""
	updated: List[Chat] = []
	matched = False
	for chat in chats:
		if chat.id != chat_id:
			updated.append(chat)
			continue
		matched = True
		if chat.last_message_time is not None and message.created_at < chat.last_message_time:
			updated.append(chat)
			continue
		updated.append(
			replace(
				chat,
				last_message=message.body,
				last_message_time=message.created_at,
				unread=chat.unread or mark_unread,
			)
		)
	if not matched:
		return list(chats)
	return sort_by_recency(updated)


def _reconcile(fetched: Chat, current: Optional[Chat]) -> Chat:
	if current is None:
		return fetched
	updated = fetched
	if current.last_message_time is not None and (
		fetched.last_message_time is None or current.last_message_time > fetched.last_message_time
	):
		updated = replace(updated, last_message=current.last_message, last_message_time=current.last_message_time)
	if current.unread and not updated.unread:
		updated = replace(updated, unread=True)
	return updated


class ChatListAggregator:
	"""The chat list of one user, with unread flags and name search."""

	def __init__(self, viewer_id: str, chats: Iterable[Chat] = ()) -> None:
		self.viewer_id = viewer_id
		self._chats: List[Chat] = sort_by_recency(chats)

	@property
	def chats(self) -> List[Chat]:
		return list(self._chats)

	@property
	def chat_ids(self) -> FrozenSet[str]:
		return frozenset(chat.id for chat in self._chats)

	def __len__(self) -> int:
		return len(self._chats)

	def get(self, chat_id: Optional[str]) -> Optional[Chat]:
		for chat in self._chats:
			if chat.id == chat_id:
				return chat
		return None

	def load(self, chats: Iterable[Chat]) -> None:
		"""Replace the list after a full refetch.

		Membership comes from the fetch. Unread flags survive the reload, and a
		summary already newer than the fetched one is kept.
		"""
		known = {chat.id: chat for chat in self._chats}
		self._chats = sort_by_recency(_reconcile(chat, known.get(chat.id)) for chat in chats)

	def apply_new_message(self, chat_id: str, message: Message, *, open_chat_id: Optional[str] = None) -> bool:
		"""Fold a newly observed message into the list.

		Messages from other users in a chat that is not open flag it unread.
		Returns True if the list changed.
		"""
		mark_unread = message.sender_id != self.viewer_id and chat_id != open_chat_id
		updated = apply_new_message(self._chats, chat_id, message, mark_unread=mark_unread)
		if updated == self._chats:
			return False
		self._chats = updated
		return True

	def mark_read(self, chat_id: str) -> bool:
		for index, chat in enumerate(self._chats):
			if chat.id == chat_id:
				if not chat.unread:
					return False
				self._chats[index] = replace(chat, unread=False)
				return True
		return False

	def search(self, term: str) -> List[Chat]:
		"""Case-insensitive substring match on chat names, recency order kept."""
		needle = term.strip().lower()
		if not needle:
			return self.chats
		return [chat for chat in self._chats if needle in chat.name.lower()]
