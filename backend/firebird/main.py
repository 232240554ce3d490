"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Tuple

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from firebird.api import chats, ops
from firebird.api.errors import install_error_handlers
from firebird.domain.chat.realtime import InMemoryRealtimeChannel, RealtimeChannel, RedisRealtimeChannel
from firebird.domain.chat.repo import ChatRepository, InMemoryChatRepository, PostgresChatRepository
from firebird.domain.chat.sockets import ChatNamespace
from firebird.infra import postgres
from firebird.obs import init as obs_init
from firebird.settings import settings


def build_chat_backend() -> Tuple[ChatRepository, RealtimeChannel]:
	"""Pick the store and realtime channel from ``CHAT_STORE``."""
	if settings.uses_memory_store():
		memory_channel = InMemoryRealtimeChannel()
		return InMemoryChatRepository(publisher=memory_channel), memory_channel
	redis_channel = RedisRealtimeChannel()
	return PostgresChatRepository(publisher=redis_channel), redis_channel


@asynccontextmanager
async def lifespan(app: FastAPI):
	if not settings.uses_memory_store():
		await postgres.init_pool()
	try:
		yield
	finally:
		if not settings.uses_memory_store():
			await postgres.close_pool()


app = FastAPI(title="Firebird Team Chat", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins or "*" in allow_origins:
	# Starlette disallows wildcard '*' with allow_credentials=True.
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

chat_repository, chat_channel = build_chat_backend()
app.state.chat_repository = chat_repository
app.state.chat_channel = chat_channel

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
chat_namespace = ChatNamespace(chat_repository, chat_channel)
sio.register_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(chats.router, tags=["chats"])
app.include_router(ops.router, tags=["ops"])
