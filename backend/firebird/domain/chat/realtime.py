"""Realtime "message inserted" delivery scoped to a set of chat ids.

Delivery is at-least-once and unordered across chats. Consumers must merge
idempotently; nothing here de-duplicates or replays missed events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AbstractSet, Awaitable, Callable, Dict, FrozenSet, Optional, Protocol

import ulid
from redis.exceptions import RedisError

from firebird.infra.redis import redis_client
from firebird.obs import metrics as obs_metrics
from firebird.settings import settings

from .errors import RealtimeError
from .models import Message

_LOG = logging.getLogger(__name__)

EVENT_MESSAGE_INSERTED = "message_inserted"

OnInsert = Callable[[Message], Awaitable[None]]
OnError = Callable[[Exception], None]


@dataclass(slots=True, frozen=True)
class SubscriptionHandle:
	id: str
	chat_ids: FrozenSet[str]


class RealtimeChannel(Protocol):
	async def subscribe(
		self,
		chat_ids: AbstractSet[str],
		on_insert: OnInsert,
		*,
		on_error: Optional[OnError] = None,
	) -> SubscriptionHandle:
		...

	async def unsubscribe(self, handle: SubscriptionHandle) -> None:
		...


class MessagePublisher(Protocol):
	async def publish(self, message: Message) -> None:
		...


def channel_name(chat_id: str, *, prefix: Optional[str] = None) -> str:
	return f"{prefix or settings.chat_realtime_prefix}:{chat_id}:inserts"


def encode_event(message: Message) -> str:
	return json.dumps({"event": EVENT_MESSAGE_INSERTED, "message": message.to_dict()}, separators=(",", ":"))


def decode_event(raw: str | bytes) -> Message:
	"""Parse a published insert event. Raises ValueError on malformed input."""
	try:
		payload = json.loads(raw)
		if payload.get("event") != EVENT_MESSAGE_INSERTED:
			raise ValueError(f"unexpected_event:{payload.get('event')}")
		return Message.from_dict(payload["message"])
	except (KeyError, TypeError, AttributeError, json.JSONDecodeError) as exc:
		raise ValueError("malformed_event") from exc


async def _deliver(on_insert: OnInsert, message: Message, handle_id: str) -> None:
	try:
		await on_insert(message)
	except Exception:
		_LOG.exception("chat_realtime_callback_failed", extra={"subscription": handle_id, "message_id": message.id})


@dataclass(slots=True)
class _MemorySubscription:
	handle: SubscriptionHandle
	on_insert: OnInsert


class InMemoryRealtimeChannel:
	"""In-process channel used by the memory store and in tests."""

	def __init__(self) -> None:
		self._subscriptions: Dict[str, _MemorySubscription] = {}

	@property
	def subscription_count(self) -> int:
		return len(self._subscriptions)

	async def subscribe(
		self,
		chat_ids: AbstractSet[str],
		on_insert: OnInsert,
		*,
		on_error: Optional[OnError] = None,
	) -> SubscriptionHandle:
		handle = SubscriptionHandle(id=str(ulid.new()), chat_ids=frozenset(chat_ids))
		self._subscriptions[handle.id] = _MemorySubscription(handle=handle, on_insert=on_insert)
		obs_metrics.subscription_opened()
		return handle

	async def unsubscribe(self, handle: SubscriptionHandle) -> None:
		if self._subscriptions.pop(handle.id, None) is not None:
			obs_metrics.subscription_closed()

	async def publish(self, message: Message) -> None:
		for subscription in list(self._subscriptions.values()):
			if message.chat_id in subscription.handle.chat_ids:
				await _deliver(subscription.on_insert, message, subscription.handle.id)


@dataclass(slots=True)
class _RedisSubscription:
	handle: SubscriptionHandle
	pubsub: object
	task: asyncio.Task


class RedisRealtimeChannel:
	"""Redis pub/sub channel: one Redis channel per chat id.

	Each subscription owns a PubSub connection and a reader task. When the
	reader loses its connection it reports through ``on_error`` and stops;
	there is no reconnect loop.
	"""

	def __init__(self, client=None, *, prefix: Optional[str] = None, poll_seconds: Optional[float] = None) -> None:
		self._client = client or redis_client
		self._prefix = prefix or settings.chat_realtime_prefix
		self._poll_seconds = poll_seconds if poll_seconds is not None else settings.chat_realtime_poll_seconds
		self._subscriptions: Dict[str, _RedisSubscription] = {}

	@property
	def subscription_count(self) -> int:
		return len(self._subscriptions)

	async def subscribe(
		self,
		chat_ids: AbstractSet[str],
		on_insert: OnInsert,
		*,
		on_error: Optional[OnError] = None,
	) -> SubscriptionHandle:
		handle = SubscriptionHandle(id=str(ulid.new()), chat_ids=frozenset(chat_ids))
		channels = [channel_name(chat_id, prefix=self._prefix) for chat_id in sorted(handle.chat_ids)]
		pubsub = self._client.pubsub(ignore_subscribe_messages=True)
		try:
			await pubsub.subscribe(*channels)
		except (RedisError, OSError) as exc:
			obs_metrics.inc_realtime_failure("subscribe")
			await pubsub.aclose()
			raise RealtimeError("subscribe_failed") from exc
		task = asyncio.create_task(
			self._pump(handle, pubsub, on_insert, on_error),
			name=f"chat-realtime-{handle.id}",
		)
		self._subscriptions[handle.id] = _RedisSubscription(handle=handle, pubsub=pubsub, task=task)
		obs_metrics.subscription_opened()
		_LOG.debug("chat_realtime_subscribed", extra={"subscription": handle.id, "channels": channels})
		return handle

	async def unsubscribe(self, handle: SubscriptionHandle) -> None:
		subscription = self._subscriptions.pop(handle.id, None)
		if subscription is None:
			return
		obs_metrics.subscription_closed()
		subscription.task.cancel()
		await asyncio.gather(subscription.task, return_exceptions=True)
		pubsub = subscription.pubsub
		try:
			await pubsub.unsubscribe()
		except (RedisError, OSError):
			_LOG.warning("chat_realtime_unsubscribe_failed", extra={"subscription": handle.id}, exc_info=True)
		finally:
			await pubsub.aclose()

	async def publish(self, message: Message) -> None:
		try:
			await self._client.publish(channel_name(message.chat_id, prefix=self._prefix), encode_event(message))
		except (RedisError, OSError) as exc:
			obs_metrics.inc_realtime_failure("publish")
			raise RealtimeError("publish_failed") from exc

	async def _pump(self, handle: SubscriptionHandle, pubsub, on_insert: OnInsert, on_error: Optional[OnError]) -> None:
		try:
			while True:
				raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_seconds)
				if raw is None or raw.get("type") != "message":
					continue
				try:
					message = decode_event(raw["data"])
				except ValueError:
					_LOG.warning("chat_realtime_malformed_event", extra={"subscription": handle.id})
					continue
				if message.chat_id not in handle.chat_ids:
					continue
				await _deliver(on_insert, message, handle.id)
		except (RedisError, OSError) as exc:
			obs_metrics.inc_realtime_failure("read")
			_LOG.warning("chat_realtime_connection_lost", extra={"subscription": handle.id}, exc_info=True)
			if on_error is not None:
				on_error(exc)
