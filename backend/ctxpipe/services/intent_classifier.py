from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from ctxpipe.memory.types import Message

logger = logging.getLogger(__name__)


class IntentCategory(str, Enum):
    QUESTION = "question"
    CREATE = "create"
    UPDATE = "update"


_REQUEST_PREFIXES = (
    "can you",
    "could you",
    "would you",
    "will you",
    "please",
    "i want you to",
    "i need you to",
    "help me",
    "i want to",
    "i need to",
    "let's",
    "lets",
)

_QUESTION_WORDS = frozenset(
    {"how", "what", "why", "when", "which", "where", "who", "is", "are", "does", "do", "explain"}
)

_CREATE_CUES = (
    "create",
    "build",
    "make",
    "generate",
    "scaffold",
    "new workflow",
    "from scratch",
    "set up",
    "setup",
    "design",
)

_UPDATE_CUES = (
    "update",
    "change",
    "modify",
    "edit",
    "fix",
    "rename",
    "remove",
    "delete",
    "replace",
    "adjust",
    "tweak",
    "connect",
    "move",
    "swap",
    "rewire",
)

# Verbs that mean "create" on an empty workspace and "update" otherwise.
_AMBIGUOUS_CUES = ("add", "insert", "include", "configure", "use", "set")

_REFERENCE_CUES = ("it", "this", "that", "existing", "current", "the workflow", "my workflow")


@dataclass(frozen=True)
class IntentDecision:
    """Classifier output; `ambiguous` marks a defaulted or tie-broken result."""

    category: IntentCategory
    ambiguous: bool = False
    reason: str = ""


class IntentClassifier:
    """Rule-based, side-effect free mapping of an utterance to an intent."""

    def classify(
        self,
        utterance: str,
        recent_history: Sequence[Message] = (),
        *,
        workspace_item_count: int = 0,
    ) -> IntentCategory:
        return self.decide(
            utterance, recent_history, workspace_item_count=workspace_item_count
        ).category

    def decide(
        self,
        utterance: str,
        recent_history: Sequence[Message] = (),
        *,
        workspace_item_count: int = 0,
    ) -> IntentDecision:
        text = _normalize(utterance)
        if not text:
            return self._ambiguous("empty utterance")

        occupied = workspace_item_count > 0 or _history_has_artifact(recent_history)
        stripped, is_request = _strip_request_prefix(text)

        first_word = stripped.split(" ", 1)[0] if stripped else ""
        if not is_request and (first_word in _QUESTION_WORDS or text.endswith("?")):
            return IntentDecision(IntentCategory.QUESTION, reason="question form")

        create_hits = _count_cues(stripped, _CREATE_CUES)
        update_hits = _count_cues(stripped, _UPDATE_CUES)
        ambiguous_hits = _count_cues(stripped, _AMBIGUOUS_CUES)
        if ambiguous_hits:
            if occupied:
                update_hits += ambiguous_hits
            else:
                create_hits += ambiguous_hits
        if occupied and _count_cues(stripped, _REFERENCE_CUES):
            update_hits += 1

        if create_hits > update_hits:
            return IntentDecision(IntentCategory.CREATE, reason="create cues")
        if update_hits > create_hits:
            return IntentDecision(IntentCategory.UPDATE, reason="update cues")
        if create_hits and update_hits:
            category = IntentCategory.UPDATE if occupied else IntentCategory.CREATE
            return IntentDecision(category, ambiguous=True, reason="tied cues")
        return self._ambiguous("no matching cues")

    @staticmethod
    def _ambiguous(reason: str) -> IntentDecision:
        logger.debug("Intent classification ambiguous (%s); defaulting to question", reason)
        return IntentDecision(IntentCategory.QUESTION, ambiguous=True, reason=reason)


def _normalize(utterance: str) -> str:
    return " ".join(utterance.casefold().split())


def _strip_request_prefix(text: str) -> tuple[str, bool]:
    for prefix in _REQUEST_PREFIXES:
        if text == prefix or text.startswith(prefix + " "):
            return text[len(prefix) :].strip(), True
    return text, False


def _count_cues(text: str, cues: Sequence[str]) -> int:
    return sum(1 for cue in cues if re.search(rf"\b{re.escape(cue)}\b", text))


def _history_has_artifact(recent_history: Sequence[Message]) -> bool:
    return any(message.flags.is_flow_artifact for message in recent_history)
