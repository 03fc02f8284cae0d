from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Optional

import pytest

from ctxpipe.core.config import Settings
from ctxpipe.memory.embedder import Embedder, EmbeddingUnavailable
from ctxpipe.memory.history_persistence import NullHistoryPersistence, SQLHistoryPersistence
from ctxpipe.memory.types import (
    HistoryKey,
    HistoryRecord,
    KnowledgeItem,
    KnowledgeKind,
    Message,
    MessageFlags,
)
from ctxpipe.services import context_assembler as assembler_module
from ctxpipe.services.context_assembler import (
    ContextAssembler,
    NoActiveHistoryKey,
    create_history_persistence,
)
from ctxpipe.services.fragment_cache import (
    CATALOG_SCOPE,
    WORKSPACE_SCOPE,
    CacheBuildFailure,
    FragmentCache,
)
from ctxpipe.services.fragments import (
    CatalogEntry,
    InMemoryWorkspaceSource,
    StaticCatalogSource,
    WorkspaceItem,
)
from ctxpipe.services.history_store import HistoryStore
from ctxpipe.services.intent_classifier import IntentCategory
from ctxpipe.services.knowledge_index import KnowledgeIndex

KEY = HistoryKey(provider="openai", model="gpt-4o", credential_id="cred-1")
OTHER_KEY = HistoryKey(provider="openai", model="gpt-4o-mini", credential_id="cred-1")

VOCABULARY = ["timer", "trigger", "schedule", "spreadsheet", "slack", "cron"]

CATALOG = [
    CatalogEntry(
        id="cron", name="Cron", category="trigger", description="Fires on a cron schedule"
    ),
    CatalogEntry(
        id="webhook", name="Webhook", category="trigger", description="Starts on an HTTP call"
    ),
    CatalogEntry(id="slack", name="Slack", category="action", description="Posts a message"),
]

KNOWLEDGE = [
    KnowledgeItem(
        id="node-cron",
        kind=KnowledgeKind.NODE_TYPE,
        content="Cron node fires a timer trigger on a schedule",
    ),
    KnowledgeItem(
        id="pattern-poll",
        kind=KnowledgeKind.PATTERN,
        content="Polling pattern: timer trigger then an HTTP request",
    ),
    KnowledgeItem(
        id="example-digest",
        kind=KnowledgeKind.EXAMPLE,
        content="Example: timer trigger that sends a Slack digest",
    ),
    KnowledgeItem(
        id="guide-naming",
        kind=KnowledgeKind.GUIDE,
        content="Guide: give every timer trigger a clear name",
    ),
]

TRUNCATION_ORDER = ["retrieval", "catalog_compact", "catalog_omitted", "summary", "history"]


class VocabularyEmbedder(Embedder):
    """One dimension per known word plus a small shared bias dimension."""

    provider = "test"
    model_name = "vocabulary"

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY) -> None:
        self.vocabulary = list(vocabulary)
        self.dimension = len(self.vocabulary) + 1

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        vector[0] = 0.1
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            if token in self.vocabulary:
                vector[self.vocabulary.index(token) + 1] += 1.0
        return vector


class UnavailableEmbedder(Embedder):
    provider = "unavailable"
    model_name = "unavailable"
    dimension = len(VOCABULARY) + 1

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        raise EmbeddingUnavailable("embedding service unreachable")


class GatedPersistence(NullHistoryPersistence):
    """Holds the first history load open until the test releases it."""

    def __init__(self) -> None:
        self.loading = asyncio.Event()
        self.release = asyncio.Event()

    async def load_record(self, key: HistoryKey) -> Optional[HistoryRecord]:
        self.loading.set()
        await self.release.wait()
        return None


def _assembler(
    *,
    embedder: Optional[Embedder] = None,
    catalog: Optional[list[CatalogEntry]] = None,
    workspace: Optional[list[WorkspaceItem]] = None,
    max_recent: int = 10,
    top_k: int = 5,
    active_key: Optional[HistoryKey] = KEY,
) -> ContextAssembler:
    return ContextAssembler(
        history_store=HistoryStore(NullHistoryPersistence(), max_recent=max_recent),
        fragment_cache=FragmentCache(),
        knowledge_index=KnowledgeIndex(embedder or VocabularyEmbedder()),
        catalog_source=StaticCatalogSource(CATALOG if catalog is None else catalog),
        workspace_source=InMemoryWorkspaceSource(workspace or []),
        retrieval_top_k=top_k,
        history_max_recent=max_recent,
        active_key=active_key,
    )


def _message(index: int, **flags: bool) -> Message:
    role = "user" if index % 2 else "assistant"
    return Message.create(
        role,
        f"Message {index}. Discussing the workflow in some detail.",
        flags=MessageFlags(**flags),
        message_id=f"m{index}",
    )


@pytest.mark.anyio
async def test_question_turn_uses_retrieval_only():
    assembler = _assembler()
    await assembler.knowledge_index.index_feed(KNOWLEDGE)

    payload = await assembler.assemble("How do I use a timer trigger?")

    assert payload.category is IntentCategory.QUESTION
    assert payload.catalog_fragment is None
    assert payload.workspace_fragment is None
    assert {hit.item.kind for hit in payload.retrieval} <= {
        KnowledgeKind.NODE_TYPE,
        KnowledgeKind.EXAMPLE,
    }
    assert {item.id for item in payload.retrieval.items} == {"node-cron", "example-digest"}
    assert payload.budget_exceeded is None


@pytest.mark.anyio
async def test_create_turn_uses_cached_catalog_and_workspace_summary():
    assembler = _assembler(workspace=[WorkspaceItem(id="n1", type="webhook", name="Inbound")])
    await assembler.knowledge_index.index_feed(KNOWLEDGE)

    payload = await assembler.assemble("Create a timer trigger workflow")

    assert payload.category is IntentCategory.CREATE
    assert "- Cron (cron): Fires on a cron schedule" in payload.catalog_fragment
    assert payload.workspace_fragment.startswith("Workspace has 1 items (webhook x1)")
    assert {item.id for item in payload.retrieval.items} == {"pattern-poll", "example-digest"}

    misses = assembler.fragment_cache.stats.misses
    again = await assembler.assemble("Create a timer trigger workflow", IntentCategory.CREATE)
    assert again.catalog_fragment == payload.catalog_fragment
    assert assembler.fragment_cache.stats.misses == misses


@pytest.mark.anyio
async def test_update_turn_uses_full_workspace_without_retrieval():
    workspace = [
        WorkspaceItem(id="n1", type="cron", name="Hourly", parameters={"expression": "0 * * * *"}),
        WorkspaceItem(id="n2", type="slack", name="Notify", parameters={"channel": "#ops"}),
    ]
    assembler = _assembler(workspace=workspace)
    await assembler.knowledge_index.index_feed(KNOWLEDGE)

    payload = await assembler.assemble("Change the schedule to run every day")

    assert payload.category is IntentCategory.UPDATE
    assert len(payload.retrieval) == 0
    assert payload.catalog_fragment is not None
    rows = json.loads(payload.workspace_fragment)
    assert [row["id"] for row in rows] == ["n1", "n2"]
    assert rows[0]["parameters"] == {"expression": "0 * * * *"}
    assert assembler.fragment_cache.peek(WORKSPACE_SCOPE, "summary") is None


@pytest.mark.anyio
async def test_timer_trigger_request_retrieves_trigger_items_first():
    assembler = _assembler(top_k=5)
    trigger_items = [
        KnowledgeItem(
            id="schedule-trigger",
            kind=KnowledgeKind.PATTERN,
            content="Schedule trigger node: start a workflow on a timer",
        ),
        KnowledgeItem(
            id="cron-trigger",
            kind=KnowledgeKind.PATTERN,
            content="Timer trigger pattern with a cron expression",
        ),
        KnowledgeItem(
            id="daily-report",
            kind=KnowledgeKind.EXAMPLE,
            content="Example: a daily timer that emails a report",
        ),
    ]
    unrelated = [
        KnowledgeItem(
            id=f"sheet-{index}",
            kind=KnowledgeKind.EXAMPLE,
            content=f"Spreadsheet example {index} appends rows",
        )
        for index in range(50)
    ]
    await assembler.knowledge_index.index_feed(unrelated[:25] + trigger_items + unrelated[25:])

    payload = await assembler.assemble("how do I create a timer trigger", IntentCategory.CREATE)

    ids = [item.id for item in payload.retrieval.items]
    scores = [hit.score for hit in payload.retrieval]
    assert payload.category is IntentCategory.CREATE
    assert len(ids) == 5
    assert set(ids[:3]) == {"schedule-trigger", "cron-trigger", "daily-report"}
    assert ids[3:] == ["sheet-0", "sheet-1"]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.anyio
async def test_embedding_failure_degrades_question_turn():
    assembler = _assembler(embedder=UnavailableEmbedder())
    assembler.knowledge_index.index(
        [KnowledgeItem(id="x", kind=KnowledgeKind.EXAMPLE, content="x", embedding=(1.0,) * 7)]
    )
    await assembler.commit_turn(_message(1), _message(2))

    payload = await assembler.assemble("What is a cron node?")

    assert payload.category is IntentCategory.QUESTION
    assert len(payload.retrieval) == 0
    assert payload.retrieval_degraded is True
    assert [row.id for row in payload.history] == ["m1", "m2"]


@pytest.mark.anyio
async def test_retrieval_is_dropped_lowest_score_first():
    assembler = _assembler()
    filler = "lorem ipsum dolor " * 25
    await assembler.knowledge_index.index_feed(
        [
            KnowledgeItem(
                id="best", kind=KnowledgeKind.NODE_TYPE, content=f"timer trigger cron {filler}"
            ),
            KnowledgeItem(
                id="good", kind=KnowledgeKind.NODE_TYPE, content=f"timer trigger {filler}"
            ),
            KnowledgeItem(id="weak", kind=KnowledgeKind.EXAMPLE, content=f"timer {filler}"),
        ]
    )
    question = "How does a timer trigger with cron work?"

    full = await assembler.assemble(question, budget=100_000)
    trimmed = await assembler.assemble(question, budget=full.estimated_tokens - 20)

    assert [item.id for item in full.retrieval.items] == ["best", "good", "weak"]
    assert [item.id for item in trimmed.retrieval.items] == ["best", "good"]
    assert trimmed.truncations == ["retrieval"]
    assert trimmed.estimated_tokens <= trimmed.budget
    assert trimmed.budget_exceeded is None


@pytest.mark.anyio
async def test_summary_decisions_are_evicted_before_raw_history():
    assembler = _assembler(max_recent=3)
    await assembler.commit_turn(_message(1, is_decision=True), _message(2, is_error=True))
    await assembler.commit_turn(_message(3), _message(4))
    await assembler.commit_turn(_message(5), _message(6))

    full = await assembler.assemble("What is a cron node?", budget=100_000)
    trimmed = await assembler.assemble("What is a cron node?", budget=full.estimated_tokens - 3)

    assert [fact.message_id for fact in full.history_summary.facts] == ["m1", "m2"]
    assert trimmed.truncations == ["summary"]
    assert [fact.message_id for fact in trimmed.history_summary.facts] == ["m2"]
    assert [row.id for row in trimmed.history] == ["m4", "m5", "m6"]


@pytest.mark.anyio
async def test_truncation_order_and_protected_messages():
    workspace = [WorkspaceItem(id="n1", type="cron", name="Hourly")]
    assembler = _assembler(workspace=workspace, max_recent=4)
    await assembler.knowledge_index.index_feed(KNOWLEDGE)
    flags = {
        1: {"is_decision": True},
        2: {"is_error": True},
        5: {"is_flow_artifact": True},
        7: {"is_error": True},
    }
    for index in range(1, 9):
        await assembler.history_store.append(KEY, _message(index, **flags.get(index, {})))

    payload = await assembler.assemble(
        "Create a timer trigger workflow", IntentCategory.CREATE, budget=1
    )

    ranks = [TRUNCATION_ORDER.index(step) for step in payload.truncations]
    assert ranks == sorted(ranks)
    assert "retrieval" in payload.truncations
    assert "catalog_omitted" in payload.truncations
    assert "history" in payload.truncations
    assert len(payload.retrieval) == 0
    assert payload.catalog_fragment is None
    assert [row.id for row in payload.history] == ["m5", "m7"]
    assert [fact.message_id for fact in payload.history_summary.facts] == ["m2"]
    assert payload.utterance == "Create a timer trigger workflow"

    exceeded = payload.budget_exceeded
    assert exceeded is not None
    assert exceeded.budget == 1
    assert exceeded.estimated_tokens == payload.estimated_tokens > 1
    assert set(exceeded.protected_message_ids) == {"m5", "m7", "m2"}


@pytest.mark.anyio
async def test_catalog_change_is_visible_on_next_assembly():
    assembler = _assembler()
    first = await assembler.assemble("Build a workflow", IntentCategory.CREATE)

    assembler.catalog_source.replace(
        CATALOG + [CatalogEntry(id="gmail", name="Gmail", category="action")]
    )
    assembler.catalog_changed()
    second = await assembler.assemble("Build a workflow", IntentCategory.CREATE)

    assert "Gmail" not in first.catalog_fragment
    assert "- Gmail (gmail)" in second.catalog_fragment
    assert assembler.fragment_cache.peek(CATALOG_SCOPE, "full") is not None


@pytest.mark.anyio
async def test_catalog_invalidated_during_assembly_is_not_cached():
    persistence = GatedPersistence()
    catalog = StaticCatalogSource(
        [CatalogEntry(id="cron", name="Cron", description="OLD text")]
    )
    assembler = ContextAssembler(
        history_store=HistoryStore(persistence),
        fragment_cache=FragmentCache(),
        knowledge_index=KnowledgeIndex(VocabularyEmbedder()),
        catalog_source=catalog,
        workspace_source=InMemoryWorkspaceSource(),
        active_key=KEY,
    )

    in_flight = asyncio.create_task(
        assembler.assemble("Build a workflow", IntentCategory.CREATE)
    )
    await persistence.loading.wait()
    # Same ids, new description: the inputs hash does not change.
    catalog.replace([CatalogEntry(id="cron", name="Cron", description="NEW text")])
    assembler.catalog_changed()
    persistence.release.set()
    during = await in_flight

    assert "OLD text" in during.catalog_fragment
    assert assembler.fragment_cache.peek(CATALOG_SCOPE, "full") is None

    after = await assembler.assemble("Build a workflow", IntentCategory.CREATE)

    assert "NEW text" in after.catalog_fragment
    assert "OLD text" not in after.catalog_fragment
    assert assembler.fragment_cache.peek(CATALOG_SCOPE, "full").payload == after.catalog_fragment


@pytest.mark.anyio
@pytest.mark.parametrize("budget", [0, -5])
async def test_non_positive_budget_is_rejected(budget):
    assembler = _assembler()

    with pytest.raises(ValueError):
        await assembler.assemble("Build a workflow", IntentCategory.CREATE, budget)


@pytest.mark.anyio
async def test_fragment_build_failure_propagates(monkeypatch):
    def broken(entries):
        raise TypeError("catalog entry is malformed")

    monkeypatch.setattr(assembler_module, "render_catalog_full", broken)
    assembler = _assembler()

    with pytest.raises(CacheBuildFailure):
        await assembler.assemble("Build a workflow", IntentCategory.CREATE)
    assert len(assembler.fragment_cache) == 0


@pytest.mark.anyio
async def test_active_key_switching_and_turn_commit():
    assembler = _assembler(active_key=None)
    with pytest.raises(NoActiveHistoryKey):
        await assembler.assemble("What is a cron node?")

    await assembler.switch_key(KEY)
    await assembler.commit_turn(_message(1), _message(2))
    on_first = await assembler.assemble("What is a cron node?")

    record = await assembler.switch_key(OTHER_KEY)
    on_second = await assembler.assemble("What is a cron node?")

    assert assembler.active_key == OTHER_KEY
    assert record.messages == []
    assert [row.id for row in on_first.history] == ["m1", "m2"]
    assert on_second.history == []
    explicit = await assembler.assemble("What is a cron node?", key=KEY)
    assert [row.id for row in explicit.history] == ["m1", "m2"]


@pytest.mark.anyio
async def test_ambiguous_classification_is_reported():
    assembler = _assembler()

    payload = await assembler.assemble("hello there")
    decision = await assembler.classify("hello there")

    assert payload.category is IntentCategory.QUESTION
    assert payload.classification_ambiguous is True
    assert decision.ambiguous is True


@pytest.mark.anyio
async def test_payload_renders_provider_messages():
    assembler = _assembler()
    await assembler.commit_turn(_message(1), _message(2))

    payload = await assembler.assemble("Build a workflow", IntentCategory.CREATE)
    messages = payload.to_messages(assembler.prompt_builder)

    assert messages[0]["role"] == "system"
    assert "Node catalog:" in messages[0]["content"]
    assert "Current workspace:\nWorkspace is empty." in messages[0]["content"]
    assert [row["role"] for row in messages[1:3]] == ["user", "assistant"]
    assert messages[-1] == {"role": "user", "content": "Build a workflow"}


def test_history_persistence_factory():
    sessionmaker = object()

    assert isinstance(
        create_history_persistence(Settings(HISTORY_PERSISTENCE="off"), sessionmaker),
        NullHistoryPersistence,
    )
    assert isinstance(
        create_history_persistence(Settings(HISTORY_PERSISTENCE="sqlite"), sessionmaker),
        SQLHistoryPersistence,
    )
    assert isinstance(
        create_history_persistence(Settings(HISTORY_PERSISTENCE="sqlite"), None),
        NullHistoryPersistence,
    )
