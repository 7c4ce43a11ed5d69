"""Tests for database migrations."""

import aiosqlite
import pytest

from dcabot.data.migrations import SCHEMA_VERSION, run_migrations


class TestMigrations:
    @pytest.mark.asyncio
    async def test_run_migrations(self, db_path):
        await run_migrations(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            tables = [row[0] for row in await cursor.fetchall()]

        for table in (
            "users",
            "exchanges",
            "strategies",
            "strategy_conditions",
            "executions",
            "scheduled_jobs",
            "notifications",
        ):
            assert table in tables

    @pytest.mark.asyncio
    async def test_sets_schema_version(self, db_path):
        await run_migrations(db_path)
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA user_version")
            assert (await cursor.fetchone())[0] == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_idempotent(self, db_path):
        await run_migrations(db_path)
        await run_migrations(db_path)
