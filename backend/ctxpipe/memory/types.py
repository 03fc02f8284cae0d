from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterator, Optional, Sequence
from urllib.parse import quote

from ctxpipe.utils.time_utils import utc_now

MESSAGE_ROLES = ("user", "assistant", "system")
SUMMARY_MESSAGE_ID = "history-summary"


@dataclass(frozen=True)
class HistoryKey:
    """Identity partitioning all conversation state."""

    provider: str
    model: str
    credential_id: str

    def storage_key(self) -> str:
        """Stable string form used by persistence backends."""

        parts = (self.provider, self.model, self.credential_id)
        return "|".join(quote(part, safe="") for part in parts)

    @classmethod
    def from_parts(cls, provider: str, model: str, credential_id: str) -> "HistoryKey":
        """Build a key with surrounding whitespace stripped from every part."""

        return cls(
            provider=provider.strip(), model=model.strip(), credential_id=credential_id.strip()
        )


@dataclass(frozen=True)
class MessageFlags:
    """Markers for content a summarizer must keep."""

    is_flow_artifact: bool = False
    is_error: bool = False
    is_decision: bool = False

    @property
    def protected(self) -> bool:
        """True when truncation may never drop the message."""

        return self.is_flow_artifact or self.is_error


@dataclass(frozen=True)
class Message:
    """One conversation message; immutable once appended."""

    role: str
    content: str
    timestamp: datetime
    flags: MessageFlags = field(default_factory=MessageFlags)
    id: str = ""

    @classmethod
    def create(
        cls,
        role: str,
        content: str,
        *,
        flags: Optional[MessageFlags] = None,
        message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Message":
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role}")
        return cls(
            role=role,
            content=content,
            timestamp=timestamp or utc_now(),
            flags=flags or MessageFlags(),
            id=message_id or uuid.uuid4().hex,
        )


@dataclass(frozen=True)
class SummaryFact:
    """A retained reference to one folded message."""

    message_id: str
    kind: str
    role: str
    description: str


@dataclass(frozen=True)
class HistorySummary:
    """Running summary of turns folded out of the raw window."""

    facts: tuple[SummaryFact, ...] = ()
    folded_ids: frozenset[str] = frozenset()
    last_folded_at: Optional[datetime] = None

    @property
    def dropped_count(self) -> int:
        return len(self.folded_ids) - len(self.facts)

    def to_message(self) -> Message:
        """Render the summary as the synthetic leading system message."""

        lines = [f"Summary of {len(self.folded_ids)} earlier messages:"]
        for fact in self.facts:
            lines.append(f"- [{fact.kind}] #{fact.message_id} ({fact.role}) {fact.description}")
        if self.dropped_count > 0:
            lines.append(f"- ({self.dropped_count} conversational messages omitted)")
        return Message(
            role="system",
            content="\n".join(lines),
            timestamp=self.last_folded_at or utc_now(),
            flags=MessageFlags(),
            id=SUMMARY_MESSAGE_ID,
        )

    def without_facts(self, message_ids: set[str]) -> "HistorySummary":
        return replace(
            self,
            facts=tuple(fact for fact in self.facts if fact.message_id not in message_ids),
        )


@dataclass
class HistoryRecord:
    """Ordered messages for one key plus an optional running summary."""

    key: HistoryKey
    messages: list[Message] = field(default_factory=list)
    summary: Optional[HistorySummary] = None

    def __len__(self) -> int:
        return len(self.messages)

    def snapshot(self) -> "HistoryRecord":
        """Shallow copy safe to hand to a persistence writer."""

        return HistoryRecord(key=self.key, messages=list(self.messages), summary=self.summary)


class KnowledgeKind(str, Enum):
    NODE_TYPE = "nodeType"
    PATTERN = "pattern"
    EXAMPLE = "example"
    GUIDE = "guide"


@dataclass(frozen=True)
class KnowledgeItem:
    """Curated knowledge-base entry with its (optional) embedding."""

    id: str
    kind: KnowledgeKind
    content: str
    tags: frozenset[str] = frozenset()
    embedding: Optional[tuple[float, ...]] = None

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    def with_embedding(self, embedding: Sequence[float]) -> "KnowledgeItem":
        return replace(self, embedding=tuple(float(value) for value in embedding))


@dataclass(frozen=True)
class KnowledgeFilter:
    """Optional pre-filter applied before similarity ranking."""

    kinds: frozenset[KnowledgeKind] = frozenset()
    tags: frozenset[str] = frozenset()

    def matches(self, item: KnowledgeItem) -> bool:
        if self.kinds and item.kind not in self.kinds:
            return False
        if self.tags and not (self.tags & item.tags):
            return False
        return True


@dataclass(frozen=True)
class ScoredItem:
    item: KnowledgeItem
    score: float


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked retrieval hits, descending by score."""

    hits: tuple[ScoredItem, ...] = ()

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[ScoredItem]:
        return iter(self.hits)

    @property
    def items(self) -> list[KnowledgeItem]:
        return [hit.item for hit in self.hits]

    def truncated(self, size: int) -> "RetrievalResult":
        return RetrievalResult(hits=self.hits[: max(0, size)])
