"""Tests for database engine creation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import inspect, text

from stui.config import Settings
from stui.database import create_engine, ensure_tables

if TYPE_CHECKING:
    from pathlib import Path


class TestCreateEngine:
    async def test_creates_missing_parent_directory(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "dir" / "cache.db"
        settings = Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{db_path}")
        engine, _ = create_engine(settings)
        try:
            await ensure_tables(engine)
            assert db_path.exists()
        finally:
            await engine.dispose()

    async def test_file_database_uses_wal(self, tmp_path: Path) -> None:
        settings = Settings(
            _env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
        )
        engine, _ = create_engine(settings)
        try:
            async with engine.connect() as conn:
                mode = (await conn.execute(text("PRAGMA journal_mode"))).scalar_one()
            assert str(mode).lower() == "wal"
        finally:
            await engine.dispose()

    async def test_memory_database_supported(self) -> None:
        settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///:memory:")
        engine, session_factory = create_engine(settings)
        try:
            await ensure_tables(engine)
            async with session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                assert result.scalar_one() == 1
        finally:
            await engine.dispose()


class TestEnsureTables:
    async def test_all_cache_tables_created(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        engine, _ = db_engine
        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {
            "folder_status",
            "browse_cache",
            "sync_states",
            "event_state",
            "local_changed",
            "needed_files",
            "cached_folders",
        } <= set(names)

    async def test_idempotent(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        engine, _ = db_engine
        await ensure_tables(engine)
        await ensure_tables(engine)
