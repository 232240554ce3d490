"""Ordered, duplicate-free message list for the conversation a user has open."""

from __future__ import annotations

import bisect
from dataclasses import replace
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from .models import Message, MessageReactions


def _sort_key(message: Message):
	return message.sort_key


def _is_sorted(messages: List[Message]) -> bool:
	return all(_sort_key(a) <= _sort_key(b) for a, b in zip(messages, messages[1:]))


class MessageOrderingBuffer:
	"""Messages of exactly one chat, ordered by ``(created_at, id)``.

	Both the optimistic copy of a message the user just sent and its realtime
	echo go through :meth:`merge`; the id check there is what keeps a single
	entry per message. None of the operations perform I/O or raise.
	"""

	__slots__ = ("_chat_id", "_messages", "_ids")

	def __init__(self, chat_id: Optional[str] = None) -> None:
		self._chat_id = chat_id
		self._messages: List[Message] = []
		self._ids: Set[str] = set()

	@classmethod
	def load(cls, chat_id: str, messages: Iterable[Message]) -> "MessageOrderingBuffer":
		"""Build a buffer from a full history fetch.

		Server order (ascending) is kept as-is; unsorted input is sorted.
		Repeated ids keep their first occurrence.
		"""
		buffer = cls(chat_id)
		for message in messages:
			if message.id in buffer._ids:
				continue
			buffer._ids.add(message.id)
			buffer._messages.append(message)
		if not _is_sorted(buffer._messages):
			buffer._messages.sort(key=_sort_key)
		return buffer

	@property
	def chat_id(self) -> Optional[str]:
		return self._chat_id

	@property
	def messages(self) -> Tuple[Message, ...]:
		return tuple(self._messages)

	def __len__(self) -> int:
		return len(self._messages)

	def __iter__(self) -> Iterator[Message]:
		return iter(tuple(self._messages))

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._ids

	def merge(self, incoming: Message, target_chat_id: Optional[str]) -> bool:
		"""Insert ``incoming`` at its chronological position.

		Returns False (and leaves the buffer untouched) when the message belongs
		to another chat or is already present.
		"""
		if incoming.chat_id != target_chat_id:
			return False
		if incoming.id in self._ids:
			return False
		self._ids.add(incoming.id)
		if not self._messages or _sort_key(self._messages[-1]) <= incoming.sort_key:
			self._messages.append(incoming)
		else:
			bisect.insort(self._messages, incoming, key=_sort_key)
		return True

	def update_reaction(self, message_id: str, reactions: MessageReactions) -> bool:
		"""Swap in the authoritative reactions for ``message_id``.

		A message that is not loaded yet is ignored.
		"""
		if message_id not in self._ids:
			return False
		for index, message in enumerate(self._messages):
			if message.id == message_id:
				self._messages[index] = replace(message, reactions=reactions)
				return True
		return False

	def to_list(self) -> List[dict]:
		return [message.to_dict() for message in self._messages]
