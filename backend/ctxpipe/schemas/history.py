from __future__ import annotations

from typing import List, Optional

from ctxpipe.memory.types import HistoryRecord
from ctxpipe.schemas.common import APIModel
from ctxpipe.schemas.context import HistoryKeyIn, MessageIn, MessageOut


class HistoryRecordOut(APIModel):
    """Serialized history record for one key."""

    key: str
    messages: List[MessageOut]
    summary: Optional[str] = None
    folded_count: int = 0

    @classmethod
    def from_record(cls, record: HistoryRecord) -> "HistoryRecordOut":
        summary = record.summary
        return cls(
            key=record.key.storage_key(),
            messages=[MessageOut.from_message(row) for row in record.messages],
            summary=summary.to_message().content if summary and summary.folded_ids else None,
            folded_count=len(summary.folded_ids) if summary else 0,
        )


class HistoryViewOut(APIModel):
    key: str
    messages: List[MessageOut]


class AppendRequest(APIModel):
    key: HistoryKeyIn
    message: MessageIn


class AppendResponse(APIModel):
    appended: bool
    message_id: str


class TurnRequest(APIModel):
    """A completed turn: the user's utterance and the assistant's reply."""

    key: HistoryKeyIn
    user: MessageIn
    assistant: Optional[MessageIn] = None


class SwitchRequest(APIModel):
    key: HistoryKeyIn
