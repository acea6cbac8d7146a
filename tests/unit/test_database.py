"""Unit tests for the pool lifecycle and migration runner."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from task_scheduler import database


@pytest.fixture(autouse=True)
def no_open_pool(monkeypatch):
    monkeypatch.setattr(database, "_pool", None)


@pytest.fixture
def migrations(tmp_path):
    (tmp_path / "001_initial_schema.sql").write_text("CREATE TABLE IF NOT EXISTS tasks (id UUID);")
    (tmp_path / "002_add_index.sql").write_text("CREATE INDEX IF NOT EXISTS idx ON tasks (id);")
    return tmp_path


class TestRunMigrations:
    @pytest.mark.asyncio
    async def test_applies_only_pending_files_in_order(self, mock_pool, migrations):
        pool, conn = mock_pool
        conn.fetch.return_value = [{"name": "001_initial_schema.sql"}]

        applied = await database.run_migrations(pool, migrations)

        assert applied == ["002_add_index.sql"]
        statements = [c[0][0] for c in conn.execute.call_args_list]
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in statements[0]
        assert "CREATE INDEX IF NOT EXISTS idx ON tasks (id);" in statements
        assert "CREATE TABLE IF NOT EXISTS tasks (id UUID);" not in statements
        assert conn.execute.call_args_list[-1][0][1] == "002_add_index.sql"

    @pytest.mark.asyncio
    async def test_missing_directory_applies_nothing(self, mock_pool, tmp_path):
        pool, conn = mock_pool

        applied = await database.run_migrations(pool, tmp_path / "absent")

        assert applied == []
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_file_is_not_recorded(self, mock_pool, migrations):
        pool, conn = mock_pool
        conn.execute.side_effect = [None, RuntimeError("syntax error")]

        with pytest.raises(RuntimeError, match="syntax error"):
            await database.run_migrations(pool, migrations)

        assert all("INSERT INTO schema_migrations" not in c[0][0] for c in conn.execute.call_args_list)


class TestOpenDatabase:
    @pytest.mark.asyncio
    async def test_creates_pool_from_settings_and_migrates(self, mock_pool, settings, migrations):
        pool, _ = mock_pool

        with (
            patch("task_scheduler.database.asyncpg.create_pool", new_callable=AsyncMock, return_value=pool) as create,
            patch("task_scheduler.database.run_migrations", new_callable=AsyncMock) as migrate,
        ):
            opened = await database.open_database(settings, migrations_dir=migrations)

        assert opened is pool
        assert await database.get_pool() is pool
        create.assert_awaited_once_with(
            settings.postgres_url,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
            command_timeout=settings.postgres_command_timeout_seconds,
        )
        migrate.assert_awaited_once_with(pool, migrations)

    @pytest.mark.asyncio
    async def test_migration_failure_closes_pool(self, mock_pool, settings):
        pool, _ = mock_pool
        pool.close = AsyncMock()

        with (
            patch("task_scheduler.database.asyncpg.create_pool", new_callable=AsyncMock, return_value=pool),
            patch(
                "task_scheduler.database.run_migrations",
                new_callable=AsyncMock,
                side_effect=RuntimeError("bad migration"),
            ),
        ):
            with pytest.raises(RuntimeError, match="bad migration"):
                await database.open_database(settings)

        pool.close.assert_awaited_once()
        with pytest.raises(RuntimeError, match="not initialized"):
            await database.get_pool()


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_unhealthy_without_pool(self):
        assert await database.health_check() is False

    @pytest.mark.asyncio
    async def test_healthy_when_select_succeeds(self, mock_pool, monkeypatch):
        pool, conn = mock_pool
        conn.fetchval.return_value = 1
        monkeypatch.setattr(database, "_pool", pool)

        assert await database.health_check(timeout=1.0) is True
        conn.fetchval.assert_awaited_once_with("SELECT 1")

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self, mock_pool, monkeypatch):
        pool, conn = mock_pool
        conn.fetchval.side_effect = asyncio.TimeoutError()
        monkeypatch.setattr(database, "_pool", pool)

        assert await database.health_check(timeout=1.0) is False
