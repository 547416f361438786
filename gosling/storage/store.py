"""Session persistence.

A Session is stored as its pydantic JSON form next to a few indexed
summary columns. Loading validates the schema version and the payload;
anything that does not round-trip raises SessionCorrupt, and the
session is unusable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from gosling.errors import SessionCorrupt
from gosling.session.schemas import SESSION_SCHEMA_VERSION, Session
from gosling.storage.database import Database
from gosling.storage.models import SessionRecord

logger = logging.getLogger(__name__)


@dataclass
class SessionSummary:
    id: str
    name: str
    mode: str
    turn_count: int
    total_tokens: int
    updated_at: datetime | None


class SessionStore:
    """Saves and restores Sessions through the async Database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, session: Session, db_session: AsyncSession | None = None) -> None:
        if db_session is None:
            async with self.db.session() as db_session:
                await self._save(session, db_session)
                await db_session.commit()
            return
        await self._save(session, db_session)

    async def _save(self, session: Session, db_session: AsyncSession) -> None:
        record = await db_session.get(SessionRecord, session.id)
        if record is None:
            record = SessionRecord(id=session.id)
            db_session.add(record)
        record.name = session.name
        record.schema_version = session.schema_version
        record.mode = session.mode
        record.turn_count = session.next_turn_index
        record.total_tokens = session.accumulated_usage.total_tokens
        record.payload = session.model_dump_json()
        await db_session.flush()
        logger.debug("Saved session %s (%d turns)", session.id, session.next_turn_index)

    async def load(self, session_id: str) -> Session | None:
        """Load a session, or None if it was never saved."""
        async with self.db.session() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            if record is None:
                return None
            return self._restore(record)

    def _restore(self, record: SessionRecord) -> Session:
        if record.schema_version != SESSION_SCHEMA_VERSION:
            raise SessionCorrupt(
                f"Unsupported session schema version {record.schema_version} "
                f"(expected {SESSION_SCHEMA_VERSION})",
                session_id=record.id,
            )
        try:
            session = Session.model_validate_json(record.payload)
        except ValidationError as e:
            logger.error("Session %s failed to deserialize: %s", record.id, e)
            raise SessionCorrupt(f"Session {record.id} failed to deserialize: {e}", session_id=record.id) from e
        if session.id != record.id:
            raise SessionCorrupt(f"Session payload id {session.id} does not match row {record.id}", session_id=record.id)
        return session

    async def list_sessions(self, limit: int = 50) -> list[SessionSummary]:
        async with self.db.session() as db_session:
            result = await db_session.execute(
                select(SessionRecord).order_by(SessionRecord.updated_at.desc()).limit(limit)
            )
            return [
                SessionSummary(
                    id=r.id,
                    name=r.name,
                    mode=r.mode,
                    turn_count=r.turn_count,
                    total_tokens=r.total_tokens,
                    updated_at=r.updated_at,
                )
                for r in result.scalars()
            ]

    async def delete(self, session_id: str) -> bool:
        async with self.db.session() as db_session:
            result = await db_session.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
            await db_session.commit()
            return result.rowcount > 0
