import pytest

from firebird.domain.chat.models import ReactionKind
from firebird.infra.jwt import encode_access

COACH_HEADERS = {"X-User-Id": "coach-1", "X-User-Role": "coach"}
ATHLETE_HEADERS = {"X-User-Id": "athlete-1"}
STRANGER_HEADERS = {"X-User-Id": "stranger-1"}


@pytest.mark.asyncio
async def test_list_chats_returns_memberships(api_client, repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)
    await repository.insert_message(chat.id, "athlete-1", "hello coach")

    response = await api_client.get("/chats", headers=ATHLETE_HEADERS)

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["id"] for item in items] == [chat.id]
    assert items[0]["last_message"] == "hello coach"
    assert items[0]["member_count"] == 2

    stranger = await api_client.get("/chats", headers=STRANGER_HEADERS)
    assert stranger.json()["items"] == []


@pytest.mark.asyncio
async def test_history_is_ascending_with_reactions(api_client, repository):
    chat = await repository.create_chat("coach-1", "News", ["athlete-1"], True)
    first = await repository.insert_message(chat.id, "coach-1", "first")
    await repository.insert_message(chat.id, "coach-1", "second")
    await repository.toggle_reaction(first.id, "athlete-1", ReactionKind.THUMBS_UP)

    response = await api_client.get(f"/chats/{chat.id}/messages", headers=ATHLETE_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["chat_id"] == chat.id
    assert [item["body"] for item in body["items"]] == ["first", "second"]
    assert body["items"][0]["reactions"] == {
        "counts": {"thumbs_up": 1, "thumbs_down": 0},
        "user_reaction": "thumbs_up",
    }


@pytest.mark.asyncio
async def test_history_requires_membership(api_client, repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)

    forbidden = await api_client.get(f"/chats/{chat.id}/messages", headers=STRANGER_HEADERS)
    missing = await api_client.get("/chats/unknown/messages", headers=COACH_HEADERS)

    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "membership_required"
    assert missing.status_code == 404
    assert missing.json()["detail"] == "chat_not_found"


@pytest.mark.asyncio
async def test_members_endpoint(api_client, repository):
    chat = await repository.create_chat("coach-1", "Team", ["athlete-1"], False)

    response = await api_client.get(f"/chats/{chat.id}/members", headers=COACH_HEADERS)
    forbidden = await api_client.get(f"/chats/{chat.id}/members", headers=STRANGER_HEADERS)

    assert response.status_code == 200
    roles = {item["user_id"]: item["role"] for item in response.json()["items"]}
    assert roles == {"coach-1": "admin", "athlete-1": "member"}
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_requests_need_credentials(api_client):
    response = await api_client.get("/chats")

    assert response.status_code == 401
    assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_bearer_token_is_accepted(api_client, repository):
    await repository.create_chat("coach-1", "Team", ["athlete-1"], False)
    token = encode_access("athlete-1", "athlete")

    response = await api_client.get("/chats", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert len(response.json()["items"]) == 1


@pytest.mark.asyncio
async def test_health_and_metrics(api_client):
    live = await api_client.get("/health/live")
    ready = await api_client.get("/health/ready")
    metrics = await api_client.get("/metrics")

    assert live.json() == {"status": "ok"}
    assert ready.status_code == 200
    assert ready.json()["store"] == "memory"
    assert metrics.status_code == 200
    assert "firebird_chat_send_total" in metrics.text
