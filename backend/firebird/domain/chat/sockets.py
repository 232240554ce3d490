"""Socket.IO namespace hosting one ChatSession per connected client."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

import socketio
from pydantic import ValidationError as PayloadError

from firebird.infra.auth import AuthenticatedUser, user_from_handshake
from firebird.obs import metrics as obs_metrics
from firebird.obs.logging import bind_context, reset_context

from .errors import ChatError
from .realtime import RealtimeChannel
from .repo import ChatRepository
from .schemas import (
	AddMembersPayload,
	ChatResponse,
	CreateChatPayload,
	MemberResponse,
	MessageResponse,
	ReactPayload,
	ReactionsResponse,
	SearchPayload,
	SelectChatPayload,
	SendMessagePayload,
)
from .session import TOPIC_CHATS, TOPIC_MESSAGES, ChatSession

_LOG = logging.getLogger(__name__)

SessionFactory = Callable[[AuthenticatedUser, Callable[[str], Awaitable[None]]], ChatSession]

def error_ack(exc: ChatError) -> dict:
	return {"ok": False, "code": exc.detail, "retryable": exc.retryable}


def _invalid_payload() -> dict:
	return {"ok": False, "code": "invalid_payload", "retryable": False}


class ChatNamespace(socketio.AsyncNamespace):
	"""``/chat`` namespace. Every event is answered through the Socket.IO ack."""

	def __init__(
		self,
		repository: Optional[ChatRepository] = None,
		channel: Optional[RealtimeChannel] = None,
		*,
		session_factory: Optional[SessionFactory] = None,
	) -> None:
		super().__init__("/chat")
		self._repository = repository
		self._channel = channel
		self._session_factory = session_factory
		self._sessions: Dict[str, ChatSession] = {}

	def configure(self, repository: ChatRepository, channel: RealtimeChannel) -> None:
		self._repository = repository
		self._channel = channel

	def session_for(self, sid: str) -> Optional[ChatSession]:
		return self._sessions.get(sid)

	def _build_session(self, sid: str, user: AuthenticatedUser) -> ChatSession:
		async def on_change(topic: str) -> None:
			await self._push(sid, topic)

		if self._session_factory is not None:
			return self._session_factory(user, on_change)
		if self._repository is None or self._channel is None:
			raise socketio.exceptions.ConnectionRefusedError("chat_unavailable")
		return ChatSession(user, self._repository, self._channel, on_change=on_change)

	async def _push(self, sid: str, topic: str) -> None:
		session = self._sessions.get(sid)
		if session is None:
			return
		if topic == TOPIC_CHATS:
			event = "chat:list"
			payload = {
				"state": session.chats_state.value,
				"realtime": session.realtime_active,
				"items": [ChatResponse.from_model(chat).model_dump(mode="json") for chat in session.chats],
			}
		elif topic == TOPIC_MESSAGES:
			event = "chat:messages"
			payload = {
				"chat_id": session.selected_chat_id,
				"state": session.buffer_state.value,
				"items": [MessageResponse.from_model(message).model_dump(mode="json") for message in session.messages],
			}
		else:
			return
		obs_metrics.socket_event(self.namespace, event)
		await self.emit(event, payload, room=sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		try:
			user = user_from_handshake(environ, auth)
		except ValueError as exc:
			raise socketio.exceptions.ConnectionRefusedError(str(exc)) from None
		self._sessions[sid] = self._build_session(sid, user)
		obs_metrics.socket_connected(self.namespace)
		await self.emit("chat:ack", {"ok": True, "user_id": user.id}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await session.close()

	async def _run(self, sid: str, event: str, handler) -> dict:
		obs_metrics.socket_event(self.namespace, event)
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "code": "unauthenticated", "retryable": False}
		tokens = bind_context(user_id=session.user.id, chat_id=session.selected_chat_id)
		try:
			result = await handler(session)
		except PayloadError:
			return _invalid_payload()
		except ChatError as exc:
			_LOG.info("chat_event_rejected", extra={"event": event, "code": exc.detail})
			return error_ack(exc)
		finally:
			reset_context(tokens)
		return {"ok": True, **(result or {})}

	async def on_chat_open(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			chats = await session.open()
			return {"chats": [ChatResponse.from_model(chat).model_dump(mode="json") for chat in chats]}

		return await self._run(sid, "chat_open", handler)

	async def on_chat_select(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = SelectChatPayload.model_validate(payload or {})
			applied = await session.select_chat(data.chat_id)
			return {"chat_id": data.chat_id, "applied": applied}

		return await self._run(sid, "chat_select", handler)

	async def on_chat_send(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = SendMessagePayload.model_validate(payload or {})
			message = await session.send_message(data.body)
			return {"message": MessageResponse.from_model(message).model_dump(mode="json")}

		return await self._run(sid, "chat_send", handler)

	async def on_chat_react(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = ReactPayload.model_validate(payload or {})
			reactions = await session.toggle_reaction(data.message_id, data.kind)
			return {
				"message_id": data.message_id,
				"reactions": ReactionsResponse.from_model(reactions).model_dump(mode="json"),
			}

		return await self._run(sid, "chat_react", handler)

	async def on_chat_create(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = CreateChatPayload.model_validate(payload or {})
			chat = await session.create_chat(data.name, data.member_ids, announcement_mode=data.announcement_mode)
			return {"chat": ChatResponse.from_model(chat).model_dump(mode="json")}

		return await self._run(sid, "chat_create", handler)

	async def on_chat_delete(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = SelectChatPayload.model_validate(payload or {})
			await session.delete_chat(data.chat_id)
			return {"chat_id": data.chat_id}

		return await self._run(sid, "chat_delete", handler)

	async def on_chat_add_members(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = AddMembersPayload.model_validate(payload or {})
			added = await session.add_members(data.chat_id, data.member_ids)
			return {"added": [MemberResponse.from_model(member).model_dump(mode="json") for member in added]}

		return await self._run(sid, "chat_add_members", handler)

	async def on_chat_members(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = SelectChatPayload.model_validate(payload or {})
			members = await session.list_members(data.chat_id)
			return {"members": [MemberResponse.from_model(member).model_dump(mode="json") for member in members]}

		return await self._run(sid, "chat_members", handler)

	async def on_chat_search(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			data = SearchPayload.model_validate(payload or {})
			return {"chats": [ChatResponse.from_model(chat).model_dump(mode="json") for chat in session.search(data.term)]}

		return await self._run(sid, "chat_search", handler)

	async def on_chat_retry(self, sid: str, payload: Optional[dict] = None) -> dict:
		async def handler(session: ChatSession) -> dict:
			await session.retry()
			return {"state": session.buffer_state.value, "chats_state": session.chats_state.value}

		return await self._run(sid, "chat_retry", handler)

