from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ctxpipe.core.security import TextTooLong, validate_text
from ctxpipe.memory.types import HistoryKey, Message
from ctxpipe.schemas.context import KEY_PART_PATTERN, MessageIn, MessageOut
from ctxpipe.schemas.history import (
    AppendRequest,
    AppendResponse,
    HistoryRecordOut,
    HistoryViewOut,
    SwitchRequest,
    TurnRequest,
)
from ctxpipe.services.context_assembler import ContextAssembler, get_context_assembler

MAX_MESSAGE_LEN = 20000

router = APIRouter(prefix="/api/history", tags=["history"])


def history_key_query(
    provider: str = Query(min_length=1, pattern=KEY_PART_PATTERN),
    model: str = Query(min_length=1, pattern=KEY_PART_PATTERN),
    credential_id: str = Query(min_length=1, pattern=KEY_PART_PATTERN),
) -> HistoryKey:
    return HistoryKey.from_parts(provider, model, credential_id)


@router.get("", response_model=HistoryRecordOut)
async def get_history(
    key: HistoryKey = Depends(history_key_query),
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> HistoryRecordOut:
    """Return the stored record for a key, creating an empty one if needed."""

    record = await assembler.history_store.get(key)
    return HistoryRecordOut.from_record(record)


@router.get("/view", response_model=HistoryViewOut)
async def get_bounded_view(
    key: HistoryKey = Depends(history_key_query),
    max_recent: Optional[int] = Query(default=None, ge=0, le=500),
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> HistoryViewOut:
    """Return the summary message plus the most recent raw messages."""

    messages = await assembler.history_store.bounded_view(key, max_recent)
    return HistoryViewOut(
        key=key.storage_key(),
        messages=[MessageOut.from_message(row) for row in messages],
    )


@router.post("/append", response_model=AppendResponse)
async def append_message(
    payload: AppendRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> AppendResponse:
    """Append one message verbatim to a key's history."""

    message = _to_message(payload.message)
    appended = await assembler.history_store.append(payload.key.to_key(), message)
    return AppendResponse(appended=appended, message_id=message.id)


@router.post("/turn", response_model=HistoryRecordOut)
async def commit_turn(
    payload: TurnRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> HistoryRecordOut:
    """Record a completed user/assistant turn."""

    key = payload.key.to_key()
    assistant = _to_message(payload.assistant) if payload.assistant else None
    await assembler.commit_turn(_to_message(payload.user), assistant, key=key)
    return HistoryRecordOut.from_record(await assembler.history_store.get(key))


@router.post("/switch", response_model=HistoryRecordOut)
async def switch_history(
    payload: SwitchRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> HistoryRecordOut:
    """Make a key the active conversation."""

    record = await assembler.switch_key(payload.key.to_key())
    return HistoryRecordOut.from_record(record)


@router.delete("", response_model=HistoryRecordOut)
async def clear_history(
    key: HistoryKey = Depends(history_key_query),
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> HistoryRecordOut:
    """Remove in-memory and persisted history for a key."""

    await assembler.history_store.clear(key)
    return HistoryRecordOut.from_record(await assembler.history_store.get(key))


def _to_message(payload: MessageIn) -> Message:
    try:
        content = validate_text(payload.content, MAX_MESSAGE_LEN)
    except TextTooLong as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Message content must not be empty"
        ) from exc
    try:
        return Message.create(
            payload.role,
            content,
            flags=payload.flags.to_flags(),
            message_id=payload.id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
