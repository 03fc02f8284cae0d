from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from ctxpipe.memory.types import HistorySummary, Message, RetrievalResult
from ctxpipe.services.intent_classifier import IntentCategory

_BASE_SYSTEM_PROMPT = (
    "You are an assistant that helps users design and maintain automation workflows. "
    "Ground every answer in the context sections below; if something is missing, say so "
    "instead of guessing node names or parameters."
)

_CATEGORY_HINTS = {
    IntentCategory.QUESTION: "The user is asking a question. Answer concisely; do not emit a workflow.",
    IntentCategory.CREATE: "The user wants a new workflow. Return the complete workflow definition.",
    IntentCategory.UPDATE: (
        "The user wants to change the current workflow. Return only the items that change, "
        "referencing existing item ids."
    ),
}


@dataclass(frozen=True)
class BudgetExceeded:
    """Raised-as-data: the payload is still over budget after truncation."""

    budget: int
    estimated_tokens: int
    protected_message_ids: tuple[str, ...] = ()


@dataclass
class PromptPayload:
    """Structured, bounded context for one model request."""

    category: IntentCategory
    utterance: str
    budget: int
    history_summary: Optional[HistorySummary] = None
    history: list[Message] = field(default_factory=list)
    catalog_fragment: Optional[str] = None
    workspace_fragment: Optional[str] = None
    retrieval: RetrievalResult = field(default_factory=RetrievalResult)
    estimated_tokens: int = 0
    budget_exceeded: Optional[BudgetExceeded] = None
    retrieval_degraded: bool = False
    classification_ambiguous: bool = False
    truncations: list[str] = field(default_factory=list)

    def history_messages(self) -> list[Message]:
        rows: list[Message] = []
        if self.history_summary is not None and self.history_summary.folded_ids:
            rows.append(self.history_summary.to_message())
        rows.extend(self.history)
        return rows

    def to_messages(self, builder: Optional["PromptBuilder"] = None) -> List[dict]:
        return (builder or PromptBuilder()).build_messages(self)


class PromptBuilder:
    """Compose provider-neutral chat messages from a prompt payload."""

    def __init__(self, system_prompt: str = _BASE_SYSTEM_PROMPT) -> None:
        self._system_prompt = system_prompt

    def build_messages(self, payload: PromptPayload) -> List[dict]:
        """Create the message list for an LLM provider."""

        messages: list[dict] = [{"role": "system", "content": self._build_system(payload)}]
        for message in payload.history_messages():
            messages.append({"role": message.role, "content": message.content})
        messages.append({"role": "user", "content": payload.utterance})
        return messages

    def estimate_payload_tokens(self, payload: PromptPayload) -> int:
        return sum(self.estimate_tokens(row["content"]) for row in self.build_messages(payload))

    def _build_system(self, payload: PromptPayload) -> str:
        sections = [self._system_prompt, _CATEGORY_HINTS[payload.category]]
        if payload.catalog_fragment:
            sections.append(f"Node catalog:\n{payload.catalog_fragment}")
        if payload.workspace_fragment:
            sections.append(f"Current workspace:\n{payload.workspace_fragment}")
        reference = self._build_reference_section(payload.retrieval)
        if reference:
            sections.append(f"Reference material:\n{reference}")
        return "\n\n".join(sections)

    @staticmethod
    def _build_reference_section(retrieval: RetrievalResult) -> str:
        lines: list[str] = []
        seen: set[str] = set()
        for hit in retrieval:
            text = " ".join(hit.item.content.split())
            if not text:
                continue
            dedupe_key = text.casefold()
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)
            lines.append(f"- [{hit.item.kind.value}] {hit.item.id}: {text}")
        return "\n".join(lines)

    @staticmethod
    def estimate_tokens(text: str) -> int:
        compact = text.strip()
        if not compact:
            return 0
        return max(1, len(compact) // 4)
