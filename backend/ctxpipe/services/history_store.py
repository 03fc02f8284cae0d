from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Optional

from ctxpipe.memory.history_persistence import HistoryPersistence, PersistenceFailure
from ctxpipe.memory.types import (
    HistoryKey,
    HistoryRecord,
    HistorySummary,
    Message,
    MessageFlags,
    SummaryFact,
)

logger = logging.getLogger(__name__)

_DESCRIPTION_LIMIT = 140


@dataclass
class HistoryView:
    """Bounded history: optional running summary plus the recent raw tail."""

    summary: Optional[HistorySummary] = None
    recent: list[Message] = field(default_factory=list)

    def messages(self) -> list[Message]:
        rows: list[Message] = []
        if self.summary is not None and self.summary.folded_ids:
            rows.append(self.summary.to_message())
        rows.extend(self.recent)
        return rows


class HistoryStore:
    """Per-key conversation history with summarization and persistence.

    Writes are scheduled as background tasks and serialized per key: a write
    waits for the previous one on the same key, and a write that has been
    superseded by a later call is skipped, so storage converges on the state of
    the most recent call regardless of completion timing.
    """

    def __init__(
        self,
        persistence: HistoryPersistence,
        *,
        max_recent: int = 10,
        summary_slack: int = 5,
        max_summary_facts: Optional[int] = None,
    ) -> None:
        if max_recent < 0 or summary_slack < 0:
            raise ValueError("max_recent and summary_slack must be >= 0")
        self._persistence = persistence
        self._max_recent = max_recent
        self._summary_slack = summary_slack
        self._max_summary_facts = max_summary_facts
        self._records: dict[HistoryKey, HistoryRecord] = {}
        self._load_locks: dict[HistoryKey, asyncio.Lock] = {}
        self._write_locks: dict[HistoryKey, asyncio.Lock] = {}
        self._write_seq: dict[HistoryKey, int] = {}
        self._pending: dict[HistoryKey, set[asyncio.Task]] = {}
        self.last_persistence_error: Optional[PersistenceFailure] = None

    async def get(self, key: HistoryKey) -> HistoryRecord:
        """Return a snapshot of the record, loading or creating it on first use."""

        record = await self._ensure(key)
        return record.snapshot()

    async def append(self, key: HistoryKey, message: Message) -> bool:
        """Append a message verbatim and schedule a save.

        Returns False when a message with the same id was already recorded.
        """

        record = await self._ensure(key)
        if any(row.id == message.id for row in record.messages):
            return False
        if record.summary is not None and message.id in record.summary.folded_ids:
            return False

        record.messages.append(message)
        self._compact(record)
        self._schedule_save(key, record.snapshot())
        return True

    async def switch(self, active_key: Optional[HistoryKey], new_key: HistoryKey) -> HistoryRecord:
        """Flush the active key's pending writes and return the new key's record."""

        if active_key is not None and active_key != new_key:
            await self.flush(active_key)
        return await self.get(new_key)

    async def clear(self, key: HistoryKey) -> None:
        """Drop in-memory and persisted state; the next get sees an empty record."""

        # Bumping the sequence marks every queued write for this key as stale.
        self._write_seq[key] = self._write_seq.get(key, 0) + 1
        await self.flush(key)
        self._records[key] = HistoryRecord(key=key)
        try:
            await self._persistence.delete_record(key)
        except PersistenceFailure as exc:
            self._report_failure(exc)

    async def view(self, key: HistoryKey, max_recent: Optional[int] = None) -> HistoryView:
        limit = self._max_recent if max_recent is None else max(0, max_recent)
        record = await self._ensure(key)
        messages = list(record.messages)
        split = max(0, len(messages) - limit)
        older, recent = messages[:split], messages[split:]
        summary = record.summary
        if older:
            summary = fold_messages(summary, older, max_facts=self._max_summary_facts)
        return HistoryView(summary=summary, recent=recent)

    async def bounded_view(self, key: HistoryKey, max_recent: Optional[int] = None) -> list[Message]:
        """Leading summary message (if any) followed by the `max_recent` newest messages."""

        return (await self.view(key, max_recent)).messages()

    async def flush(self, key: HistoryKey) -> None:
        """Wait until every scheduled write for `key` has finished."""

        tasks = list(self._pending.get(key, ()))
        if tasks:
            await asyncio.gather(*tasks)

    async def flush_all(self) -> None:
        for key in list(self._pending):
            await self.flush(key)

    def keys(self) -> list[HistoryKey]:
        return list(self._records)

    async def _ensure(self, key: HistoryKey) -> HistoryRecord:
        record = self._records.get(key)
        if record is not None:
            return record
        lock = self._load_locks.setdefault(key, asyncio.Lock())
        async with lock:
            record = self._records.get(key)
            if record is not None:
                return record
            loaded: Optional[HistoryRecord] = None
            try:
                loaded = await self._persistence.load_record(key)
            except PersistenceFailure as exc:
                self._report_failure(exc)
            record = loaded if loaded is not None else HistoryRecord(key=key)
            self._records[key] = record
            return record

    def _compact(self, record: HistoryRecord) -> None:
        if len(record.messages) <= self._max_recent + self._summary_slack:
            return
        split = len(record.messages) - self._max_recent
        older = record.messages[:split]
        record.summary = fold_messages(record.summary, older, max_facts=self._max_summary_facts)
        record.messages = record.messages[split:]
        logger.debug(
            "Folded %d messages into summary for %s", len(older), record.key.storage_key()
        )

    def _schedule_save(self, key: HistoryKey, snapshot: HistoryRecord) -> None:
        seq = self._write_seq.get(key, 0) + 1
        self._write_seq[key] = seq
        task = asyncio.create_task(self._write(key, snapshot, seq))
        pending = self._pending.setdefault(key, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

    async def _write(self, key: HistoryKey, snapshot: HistoryRecord, seq: int) -> None:
        lock = self._write_locks.setdefault(key, asyncio.Lock())
        async with lock:
            if self._write_seq.get(key) != seq:
                return
            try:
                await self._persistence.save_record(key, snapshot)
            except PersistenceFailure as exc:
                self._report_failure(exc)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected history persistence error")
                self._report_failure(PersistenceFailure(str(exc)))

    def _report_failure(self, exc: PersistenceFailure) -> None:
        self.last_persistence_error = exc
        logger.warning("History persistence failed; keeping in-memory record: %s", exc)


def fold_messages(
    summary: Optional[HistorySummary],
    messages: Iterable[Message],
    *,
    max_facts: Optional[int] = None,
) -> HistorySummary:
    """Merge old messages into a running summary.

    Flagged messages (error, flow artifact, decision) are kept as one-line
    facts keyed by message id; everything else only counts as folded. Folding
    a message that is already part of the summary is a no-op.
    """

    base = summary or HistorySummary()
    facts = list(base.facts)
    folded = set(base.folded_ids)
    known = {fact.message_id for fact in facts}
    last_folded_at = base.last_folded_at

    for message in messages:
        if message.id in folded:
            continue
        folded.add(message.id)
        if last_folded_at is None or message.timestamp > last_folded_at:
            last_folded_at = message.timestamp
        kind = fact_kind(message.flags)
        if kind is None or message.id in known:
            continue
        facts.append(
            SummaryFact(
                message_id=message.id,
                kind=kind,
                role=message.role,
                description=describe_message(message.content),
            )
        )
        known.add(message.id)

    if max_facts is not None:
        facts = _cap_facts(facts, max_facts)
    return HistorySummary(
        facts=tuple(facts), folded_ids=frozenset(folded), last_folded_at=last_folded_at
    )


def fact_kind(flags: MessageFlags) -> Optional[str]:
    if flags.is_error:
        return "error"
    if flags.is_flow_artifact:
        return "flow"
    if flags.is_decision:
        return "decision"
    return None


def describe_message(content: str) -> str:
    """One-line description: the first sentence of the first non-empty line."""

    line = next((row.strip() for row in content.splitlines() if row.strip()), "")
    value = " ".join(line.split())
    if not value:
        return "(empty)"
    match = re.match(r"(.+?[。！？!?\.])(?:\s|$)", value)
    sentence = match.group(1).strip() if match else value
    if len(sentence) <= _DESCRIPTION_LIMIT:
        return sentence
    return f"{sentence[: _DESCRIPTION_LIMIT - 3]}..."


def _cap_facts(facts: Sequence[SummaryFact], max_facts: int) -> list[SummaryFact]:
    # Only decision facts are evictable; error and flow references always stay.
    overflow = len(facts) - max(0, max_facts)
    if overflow <= 0:
        return list(facts)
    kept: list[SummaryFact] = []
    for fact in facts:
        if overflow > 0 and fact.kind == "decision":
            overflow -= 1
            continue
        kept.append(fact)
    return kept
