from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ctxpipe.db.models import HistoryRecordRow
from ctxpipe.utils.time_utils import utc_now


class HistoryRepo:
    """Repository for conversation history persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_record(self, key: str) -> Optional[HistoryRecordRow]:
        """Fetch a history row by its storage key."""

        result = await self._db.execute(
            select(HistoryRecordRow).where(HistoryRecordRow.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert_record(
        self,
        *,
        key: str,
        provider: str,
        model: str,
        credential_id: str,
        payload_json: str,
        message_count: int,
    ) -> HistoryRecordRow:
        """Insert or overwrite the serialized record for a key."""

        existing = await self.get_record(key)
        now = utc_now()
        if existing:
            existing.payload_json = payload_json
            existing.message_count = message_count
            existing.updated_at = now
            await self._db.flush()
            return existing

        row = HistoryRecordRow(
            key=key,
            provider=provider,
            model=model,
            credential_id=credential_id,
            payload_json=payload_json,
            message_count=message_count,
            updated_at=now,
        )
        self._db.add(row)
        await self._db.flush()
        return row

    async def delete_record(self, key: str) -> int:
        """Delete the persisted record for a key."""

        result = await self._db.execute(delete(HistoryRecordRow).where(HistoryRecordRow.key == key))
        await self._db.flush()
        return int(result.rowcount or 0)
