from unittest.mock import AsyncMock, MagicMock

import pytest

from firebird.infra import migrations


class _Acquire:
    def __init__(self, conn) -> None:
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc) -> bool:
        return False


class _Transaction:
    async def __aenter__(self):
        return None

    async def __aexit__(self, *exc) -> bool:
        return False


def test_team_chat_migration_is_discovered():
    files = migrations.migration_files()

    assert [migrations.version_of(path) for path in files][0] == "0001"
    sql = files[0].read_text()
    for table in ("chats", "chat_members", "chat_messages", "chat_message_reactions"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
    assert "ON DELETE CASCADE" in sql


@pytest.mark.asyncio
async def test_apply_skips_recorded_versions(tmp_path):
    (tmp_path / "0001_first.sql").write_text("SELECT 1;")
    (tmp_path / "0002_second.sql").write_text("SELECT 2;")
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[{"version": "0001"}])
    conn.transaction = MagicMock(return_value=_Transaction())
    pool = MagicMock()
    pool.acquire.return_value = _Acquire(conn)

    applied = await migrations.apply_migrations(pool, tmp_path)

    assert applied == ["0002"]
    executed = [call.args[0] for call in conn.execute.await_args_list]
    assert "SELECT 2;" in executed
    assert "SELECT 1;" not in executed
