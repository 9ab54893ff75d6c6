"""Async database service with SQLModel and SQLAlchemy 2.0."""

import time
from datetime import datetime, timezone
from typing import Any, List, Optional
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from models.database import CacheEntry, ExecutionRecord, WorkflowRecord  # noqa: F401 - table registration

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.is_sqlite:
                engine_kwargs.update(
                    pool_size=self.settings.database_pool_size,
                    max_overflow=self.settings.database_max_overflow,
                )
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflows
    # ============================================================================

    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        """Insert a new workflow definition."""
        try:
            async with self.get_session() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record

        except Exception as e:
            logger.error("Failed to create workflow", workflow_id=record.id, error=str(e))
            raise

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        """Get workflow by ID."""
        async with self.get_session() as session:
            stmt = select(WorkflowRecord).where(WorkflowRecord.id == workflow_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_workflows(self, tenant_id: Optional[str] = None,
                             trigger_type: Optional[str] = None,
                             active_only: bool = False) -> List[WorkflowRecord]:
        """List workflows, optionally filtered by tenant, trigger type and activity."""
        async with self.get_session() as session:
            stmt = select(WorkflowRecord)
            if tenant_id is not None:
                stmt = stmt.where(WorkflowRecord.tenant_id == tenant_id)
            if trigger_type is not None:
                stmt = stmt.where(WorkflowRecord.trigger_type == trigger_type)
            if active_only:
                stmt = stmt.where(WorkflowRecord.is_active == True)  # noqa: E712
            stmt = stmt.order_by(WorkflowRecord.created_at, WorkflowRecord.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_workflow(self, workflow_id: str, **fields: Any) -> Optional[WorkflowRecord]:
        """Apply field updates to a workflow. Returns None if it does not exist."""
        try:
            async with self.get_session() as session:
                stmt = select(WorkflowRecord).where(WorkflowRecord.id == workflow_id)
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
                if record is None:
                    return None

                for name, value in fields.items():
                    setattr(record, name, value)
                record.updated_at = datetime.now(timezone.utc)

                await session.commit()
                await session.refresh(record)
                return record

        except Exception as e:
            logger.error("Failed to update workflow", workflow_id=workflow_id, error=str(e))
            raise

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Hard-delete a workflow definition. Returns False if it did not exist."""
        async with self.get_session() as session:
            stmt = select(WorkflowRecord).where(WorkflowRecord.id == workflow_id)
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            if record is None:
                return False
            await session.delete(record)
            await session.commit()
            logger.info("Workflow deleted", workflow_id=workflow_id)
            return True

    async def record_workflow_run(self, workflow_id: str) -> None:
        """Bump runs_count and last_run_at when an execution starts."""
        async with self.get_session() as session:
            await session.execute(
                update(WorkflowRecord)
                .where(WorkflowRecord.id == workflow_id)
                .values(runs_count=WorkflowRecord.runs_count + 1,
                        last_run_at=datetime.now(timezone.utc))
            )
            await session.commit()

    async def record_workflow_outcome(self, workflow_id: str, succeeded: bool) -> None:
        """Bump completions_count or failures_count on a terminal transition."""
        column = "completions_count" if succeeded else "failures_count"
        async with self.get_session() as session:
            await session.execute(
                update(WorkflowRecord)
                .where(WorkflowRecord.id == workflow_id)
                .values({column: getattr(WorkflowRecord, column) + 1})
            )
            await session.commit()

    # ============================================================================
    # Cache Entries (SQLite-backed Redis alternative)
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[str]:
        """Get cache value by key. Returns None if expired or not found."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key == key)
                result = await session.execute(stmt)
                entry = result.scalar_one_or_none()

                if not entry:
                    return None

                if entry.expires_at and entry.expires_at < time.time():
                    await session.delete(entry)
                    await session.commit()
                    return None

                return entry.value

        except Exception as e:
            logger.error("Failed to get cache entry", key=key, error=str(e))
            return None

    async def set_cache_entry(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set cache value with optional TTL in seconds."""
        try:
            expires_at = time.time() + ttl if ttl else None

            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key == key)
                result = await session.execute(stmt)
                existing = result.scalar_one_or_none()

                if existing:
                    existing.value = value
                    existing.expires_at = expires_at
                    existing.created_at = time.time()
                else:
                    session.add(CacheEntry(key=key, value=value, expires_at=expires_at))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set cache entry", key=key, error=str(e))
            return False

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key == key)
                result = await session.execute(stmt)
                entry = result.scalar_one_or_none()

                if entry:
                    await session.delete(entry)
                    await session.commit()

                return entry is not None

        except Exception as e:
            logger.error("Failed to delete cache entry", key=key, error=str(e))
            return False

    async def delete_cache_pattern(self, pattern: str) -> int:
        """Delete cache entries matching pattern (uses SQL LIKE)."""
        try:
            sql_pattern = pattern.replace("*", "%")

            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key.like(sql_pattern))
                result = await session.execute(stmt)
                entries = result.scalars().all()

                for entry in entries:
                    await session.delete(entry)

                await session.commit()
                return len(entries)

        except Exception as e:
            logger.error("Failed to delete cache pattern", pattern=pattern, error=str(e))
            return 0

    async def cache_exists(self, key: str) -> bool:
        """Check if cache key exists and is not expired."""
        value = await self.get_cache_entry(key)
        return value is not None
