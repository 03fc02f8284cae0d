from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ctxpipe.memory.types import (
    HistoryKey,
    HistoryRecord,
    HistorySummary,
    Message,
    MessageFlags,
    SummaryFact,
)
from ctxpipe.repos.history_repo import HistoryRepo


class PersistenceFailure(RuntimeError):
    """Raised when a history record cannot be loaded or saved."""


class HistoryPersistence(ABC):
    """Opaque named-record storage for conversation history."""

    @abstractmethod
    async def load_record(self, key: HistoryKey) -> Optional[HistoryRecord]:
        """Return the stored record, or None when absent."""

    @abstractmethod
    async def save_record(self, key: HistoryKey, record: HistoryRecord) -> None:
        """Overwrite the stored record for `key`."""

    @abstractmethod
    async def delete_record(self, key: HistoryKey) -> None:
        """Remove any stored record for `key`."""


class NullHistoryPersistence(HistoryPersistence):
    """Persistence disabled; history lives only in memory."""

    async def load_record(self, key: HistoryKey) -> Optional[HistoryRecord]:
        return None

    async def save_record(self, key: HistoryKey, record: HistoryRecord) -> None:
        return None

    async def delete_record(self, key: HistoryKey) -> None:
        return None


class SQLHistoryPersistence(HistoryPersistence):
    """SQLAlchemy-backed persistence storing one JSON document per key."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def load_record(self, key: HistoryKey) -> Optional[HistoryRecord]:
        try:
            async with self._sessionmaker() as db:
                row = await HistoryRepo(db).get_record(key.storage_key())
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to load history for {key.storage_key()}") from exc
        if row is None:
            return None
        try:
            return record_from_json(key, row.payload_json)
        except (ValueError, KeyError, TypeError) as exc:
            raise PersistenceFailure(f"Stored history for {key.storage_key()} is corrupt") from exc

    async def save_record(self, key: HistoryKey, record: HistoryRecord) -> None:
        payload = record_to_json(record)
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    await HistoryRepo(db).upsert_record(
                        key=key.storage_key(),
                        provider=key.provider,
                        model=key.model,
                        credential_id=key.credential_id,
                        payload_json=payload,
                        message_count=len(record.messages),
                    )
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to save history for {key.storage_key()}") from exc

    async def delete_record(self, key: HistoryKey) -> None:
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    await HistoryRepo(db).delete_record(key.storage_key())
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to delete history for {key.storage_key()}") from exc


def record_to_json(record: HistoryRecord) -> str:
    summary: Optional[dict[str, Any]] = None
    if record.summary is not None:
        summary = {
            "facts": [
                {
                    "message_id": fact.message_id,
                    "kind": fact.kind,
                    "role": fact.role,
                    "description": fact.description,
                }
                for fact in record.summary.facts
            ],
            "folded_ids": sorted(record.summary.folded_ids),
            "last_folded_at": _iso(record.summary.last_folded_at),
        }
    payload = {
        "messages": [_message_to_dict(message) for message in record.messages],
        "summary": summary,
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def record_from_json(key: HistoryKey, raw: str) -> HistoryRecord:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("History payload must be an object")
    messages = [_message_from_dict(row) for row in payload.get("messages") or []]
    summary_raw = payload.get("summary")
    summary: Optional[HistorySummary] = None
    if isinstance(summary_raw, dict):
        summary = HistorySummary(
            facts=tuple(
                SummaryFact(
                    message_id=str(row["message_id"]),
                    kind=str(row["kind"]),
                    role=str(row["role"]),
                    description=str(row["description"]),
                )
                for row in summary_raw.get("facts") or []
            ),
            folded_ids=frozenset(str(value) for value in summary_raw.get("folded_ids") or []),
            last_folded_at=_parse_iso(summary_raw.get("last_folded_at")),
        )
    return HistoryRecord(key=key, messages=messages, summary=summary)


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "timestamp": _iso(message.timestamp),
        "flags": {
            "is_flow_artifact": message.flags.is_flow_artifact,
            "is_error": message.flags.is_error,
            "is_decision": message.flags.is_decision,
        },
    }


def _message_from_dict(row: dict[str, Any]) -> Message:
    flags = row.get("flags") or {}
    timestamp = _parse_iso(row.get("timestamp"))
    if timestamp is None:
        raise ValueError("Message timestamp is missing")
    return Message(
        role=str(row["role"]),
        content=str(row["content"]),
        timestamp=timestamp,
        flags=MessageFlags(
            is_flow_artifact=bool(flags.get("is_flow_artifact")),
            is_error=bool(flags.get("is_error")),
            is_decision=bool(flags.get("is_decision")),
        ),
        id=str(row["id"]),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    return datetime.fromisoformat(value)
