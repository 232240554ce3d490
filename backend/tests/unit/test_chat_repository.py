from unittest.mock import AsyncMock

import asyncpg
import pytest

from firebird.domain.chat.errors import ForbiddenError, NotFoundError, RealtimeError, RepositoryError
from firebird.domain.chat.models import MemberRole, ReactionKind
from firebird.domain.chat.repo import InMemoryChatRepository, PostgresChatRepository, next_reaction


def test_next_reaction_toggles_and_replaces():
    assert next_reaction(None, ReactionKind.THUMBS_UP) is ReactionKind.THUMBS_UP
    assert next_reaction(ReactionKind.THUMBS_UP, ReactionKind.THUMBS_UP) is None
    assert next_reaction(ReactionKind.THUMBS_UP, ReactionKind.THUMBS_DOWN) is ReactionKind.THUMBS_DOWN


@pytest.mark.asyncio
async def test_create_chat_inserts_creator_as_admin(repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1", "athlete-1", "coach-1"], False)

    members = await repository.list_members(chat.id)

    assert chat.member_count == 2
    assert chat.owner_id == "coach-1"
    roles = {m.user_id: m.role for m in members}
    assert roles == {"coach-1": MemberRole.ADMIN, "athlete-1": MemberRole.MEMBER}


@pytest.mark.asyncio
async def test_list_chats_only_returns_memberships_with_summary(repository):
    first = await repository.create_chat("coach-1", "First", ["athlete-1"], False)
    second = await repository.create_chat("coach-1", "Second", ["athlete-2"], False)
    await repository.insert_message(first.id, "athlete-1", "latest news")

    athlete_chats = await repository.list_chats_for_user("athlete-1")
    coach_chats = await repository.list_chats_for_user("coach-1")

    assert [c.id for c in athlete_chats] == [first.id]
    assert athlete_chats[0].last_message == "latest news"
    assert {c.id for c in coach_chats} == {first.id, second.id}
    assert coach_chats[0].id == first.id


@pytest.mark.asyncio
async def test_insert_message_checks_chat_and_membership(repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], True)

    with pytest.raises(NotFoundError):
        await repository.insert_message("missing", "coach-1", "hi")
    with pytest.raises(ForbiddenError):
        await repository.insert_message(chat.id, "stranger", "hi")
    with pytest.raises(ForbiddenError) as excinfo:
        await repository.insert_message(chat.id, "athlete-1", "hi")

    assert excinfo.value.detail == "announcement_locked"


@pytest.mark.asyncio
async def test_insert_publishes_after_write(repository, channel):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)
    received = []

    async def on_insert(message):
        received.append(message)

    await channel.subscribe({chat.id}, on_insert)
    message = await repository.insert_message(chat.id, "athlete-1", "hello")

    assert received == [message]


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_insert():
    publisher = AsyncMock()
    publisher.publish.side_effect = RealtimeError("publish_failed")
    repository = InMemoryChatRepository(publisher=publisher)
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)

    message = await repository.insert_message(chat.id, "coach-1", "still saved")

    assert [m.id for m in await repository.list_messages(chat.id)] == [message.id]


@pytest.mark.asyncio
async def test_list_messages_includes_viewer_reactions_in_announcement_chats(repository):
    chat = await repository.create_chat("coach-1", "News", ["athlete-1", "athlete-2"], True)
    first = await repository.insert_message(chat.id, "coach-1", "one")
    second = await repository.insert_message(chat.id, "coach-1", "two")
    await repository.toggle_reaction(first.id, "athlete-1", ReactionKind.THUMBS_UP)
    await repository.toggle_reaction(first.id, "athlete-2", ReactionKind.THUMBS_UP)

    messages = await repository.list_messages(chat.id, viewer_id="athlete-1")

    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[0].reactions.counts.thumbs_up == 2
    assert messages[0].reactions.user_reaction is ReactionKind.THUMBS_UP
    assert messages[1].reactions.counts.thumbs_up == 0


@pytest.mark.asyncio
async def test_toggle_reaction_requires_known_message_and_membership(repository):
    chat = await repository.create_chat("coach-1", "News", ["athlete-1"], True)
    message = await repository.insert_message(chat.id, "coach-1", "one")

    with pytest.raises(NotFoundError):
        await repository.toggle_reaction("missing", "athlete-1", ReactionKind.THUMBS_UP)
    with pytest.raises(ForbiddenError):
        await repository.toggle_reaction(message.id, "stranger", ReactionKind.THUMBS_UP)


@pytest.mark.asyncio
async def test_delete_chat_requires_admin_and_cascades(repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], True)
    message = await repository.insert_message(chat.id, "coach-1", "bye")
    await repository.toggle_reaction(message.id, "athlete-1", ReactionKind.THUMBS_DOWN)

    with pytest.raises(ForbiddenError):
        await repository.delete_chat(chat.id, "athlete-1")

    await repository.delete_chat(chat.id, "coach-1")

    assert await repository.list_chats_for_user("athlete-1") == []
    with pytest.raises(NotFoundError):
        await repository.list_messages(chat.id)
    with pytest.raises(NotFoundError):
        await repository.toggle_reaction(message.id, "athlete-1", ReactionKind.THUMBS_UP)


@pytest.mark.asyncio
async def test_add_members_only_returns_new_members(repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)

    added = await repository.add_members(chat.id, ["athlete-1", "athlete-2"], "coach-1")

    assert [(m.user_id, m.role) for m in added] == [("athlete-2", MemberRole.MEMBER)]
    with pytest.raises(ForbiddenError):
        await repository.add_members(chat.id, ["athlete-3"], "athlete-2")


class _Acquire:
    def __init__(self, conn) -> None:
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc) -> bool:
        return False


class StubPool:
    def __init__(self, conn) -> None:
        self.conn = conn

    def acquire(self):
        return _Acquire(self.conn)


class BrokenPool:
    def acquire(self):
        raise OSError("connection refused")


@pytest.mark.asyncio
async def test_postgres_connectivity_failure_becomes_repository_error():
    repository = PostgresChatRepository(BrokenPool())

    with pytest.raises(RepositoryError) as excinfo:
        await repository.list_chats_for_user("coach-1")

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_postgres_driver_failure_becomes_repository_error():
    conn = AsyncMock()
    conn.fetch.side_effect = asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed")
    repository = PostgresChatRepository(StubPool(conn))

    with pytest.raises(RepositoryError):
        await repository.list_chats_for_user("coach-1")


@pytest.mark.asyncio
async def test_postgres_domain_errors_pass_through():
    conn = AsyncMock()
    conn.fetchval.return_value = None
    repository = PostgresChatRepository(StubPool(conn))

    with pytest.raises(NotFoundError):
        await repository.list_members("missing")
