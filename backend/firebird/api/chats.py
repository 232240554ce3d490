"""Read-only chat endpoints used for explicit refetches."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from firebird.api.errors import to_http_error
from firebird.domain.chat.errors import ChatError, ForbiddenError
from firebird.domain.chat.repo import ChatRepository
from firebird.domain.chat.schemas import (
	ChatListResponse,
	ChatResponse,
	MemberListResponse,
	MemberResponse,
	MessageListResponse,
	MessageResponse,
)
from firebird.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/chats", tags=["chats"])


def get_chat_repository(request: Request) -> ChatRepository:
	return request.app.state.chat_repository


async def _require_membership(repository: ChatRepository, chat_id: str, user_id: str) -> None:
	members = await repository.list_members(chat_id)
	if not any(member.user_id == user_id for member in members):
		raise ForbiddenError("membership_required")


@router.get("", response_model=ChatListResponse)
async def list_chats_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	repository: ChatRepository = Depends(get_chat_repository),
) -> ChatListResponse:
	try:
		chats = await repository.list_chats_for_user(auth_user.id)
	except ChatError as exc:
		raise to_http_error(exc) from None
	return ChatListResponse(items=[ChatResponse.from_model(chat) for chat in chats])


@router.get("/{chat_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	chat_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	repository: ChatRepository = Depends(get_chat_repository),
) -> MessageListResponse:
	try:
		await _require_membership(repository, chat_id, auth_user.id)
		messages = await repository.list_messages(chat_id, viewer_id=auth_user.id)
	except ChatError as exc:
		raise to_http_error(exc) from None
	return MessageListResponse(chat_id=chat_id, items=[MessageResponse.from_model(message) for message in messages])


@router.get("/{chat_id}/members", response_model=MemberListResponse)
async def list_members_endpoint(
	chat_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	repository: ChatRepository = Depends(get_chat_repository),
) -> MemberListResponse:
	try:
		members = await repository.list_members(chat_id)
	except ChatError as exc:
		raise to_http_error(exc) from None
	if not any(member.user_id == auth_user.id for member in members):
		raise to_http_error(ForbiddenError("membership_required"))
	return MemberListResponse(chat_id=chat_id, items=[MemberResponse.from_model(member) for member in members])
