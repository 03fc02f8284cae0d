from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from ctxpipe.memory.types import HistoryKey, Message, MessageFlags, ScoredItem
from ctxpipe.schemas.common import APIModel
from ctxpipe.services.intent_classifier import IntentCategory
from ctxpipe.services.prompt_builder import PromptPayload

KEY_PART_PATTERN = r"\S"


class HistoryKeyIn(APIModel):
    """Provider/model/credential triple identifying one conversation."""

    provider: str = Field(min_length=1, pattern=KEY_PART_PATTERN)
    model: str = Field(min_length=1, pattern=KEY_PART_PATTERN)
    credential_id: str = Field(min_length=1, pattern=KEY_PART_PATTERN)

    def to_key(self) -> HistoryKey:
        return HistoryKey.from_parts(self.provider, self.model, self.credential_id)


class MessageFlagsModel(APIModel):
    is_flow_artifact: bool = False
    is_error: bool = False
    is_decision: bool = False

    def to_flags(self) -> MessageFlags:
        return MessageFlags(
            is_flow_artifact=self.is_flow_artifact,
            is_error=self.is_error,
            is_decision=self.is_decision,
        )


class MessageIn(APIModel):
    role: str
    content: str
    id: Optional[str] = None
    flags: MessageFlagsModel = Field(default_factory=MessageFlagsModel)


class MessageOut(APIModel):
    id: str
    role: str
    content: str
    timestamp: datetime
    flags: MessageFlagsModel

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        return cls.model_validate(message)


class RetrievalHitOut(APIModel):
    id: str
    kind: str
    score: float
    content: str
    tags: List[str]

    @classmethod
    def from_hit(cls, hit: ScoredItem) -> "RetrievalHitOut":
        return cls(
            id=hit.item.id,
            kind=hit.item.kind.value,
            score=hit.score,
            content=hit.item.content,
            tags=sorted(hit.item.tags),
        )


class BudgetExceededOut(APIModel):
    budget: int
    estimated_tokens: int
    protected_message_ids: List[str]


class AssembleRequest(APIModel):
    """Payload for assembling one turn's context."""

    key: Optional[HistoryKeyIn] = None
    utterance: str
    category: Optional[IntentCategory] = None
    budget: Optional[int] = Field(default=None, ge=1)


class AssembleResponse(APIModel):
    category: IntentCategory
    utterance: str
    messages: List[dict[str, Any]]
    history: List[MessageOut]
    catalog_fragment: Optional[str]
    workspace_fragment: Optional[str]
    retrieval: List[RetrievalHitOut]
    estimated_tokens: int
    budget: int
    budget_exceeded: Optional[BudgetExceededOut] = None
    retrieval_degraded: bool = False
    classification_ambiguous: bool = False
    truncations: List[str] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: PromptPayload, messages: List[dict]) -> "AssembleResponse":
        exceeded = None
        if payload.budget_exceeded is not None:
            exceeded = BudgetExceededOut(
                budget=payload.budget_exceeded.budget,
                estimated_tokens=payload.budget_exceeded.estimated_tokens,
                protected_message_ids=list(payload.budget_exceeded.protected_message_ids),
            )
        return cls(
            category=payload.category,
            utterance=payload.utterance,
            messages=messages,
            history=[MessageOut.from_message(row) for row in payload.history_messages()],
            catalog_fragment=payload.catalog_fragment,
            workspace_fragment=payload.workspace_fragment,
            retrieval=[RetrievalHitOut.from_hit(hit) for hit in payload.retrieval],
            estimated_tokens=payload.estimated_tokens,
            budget=payload.budget,
            budget_exceeded=exceeded,
            retrieval_degraded=payload.retrieval_degraded,
            classification_ambiguous=payload.classification_ambiguous,
            truncations=list(payload.truncations),
        )


class ClassifyRequest(APIModel):
    key: Optional[HistoryKeyIn] = None
    utterance: str


class ClassifyResponse(APIModel):
    category: IntentCategory
    ambiguous: bool
    reason: str
