from __future__ import annotations

import logging
from typing import Optional, Sequence

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ctxpipe.core.config import Settings
from ctxpipe.memory.embedder import Embedder, EmbeddingUnavailable, create_embedder
from ctxpipe.memory.history_persistence import (
    HistoryPersistence,
    NullHistoryPersistence,
    SQLHistoryPersistence,
)
from ctxpipe.memory.types import (
    HistoryKey,
    HistoryRecord,
    KnowledgeFilter,
    KnowledgeKind,
    Message,
    RetrievalResult,
)
from ctxpipe.services.fragment_cache import CATALOG_SCOPE, WORKSPACE_SCOPE, FragmentCache
from ctxpipe.services.fragments import (
    CatalogEntry,
    CatalogSource,
    InMemoryWorkspaceSource,
    StaticCatalogSource,
    WorkspaceItem,
    WorkspaceSource,
    catalog_inputs_hash,
    render_catalog_compact,
    render_catalog_full,
    render_workspace_full,
    render_workspace_summary,
    workspace_inputs_hash,
)
from ctxpipe.services.history_store import HistoryStore
from ctxpipe.services.intent_classifier import IntentCategory, IntentClassifier, IntentDecision
from ctxpipe.services.knowledge_index import KnowledgeIndex
from ctxpipe.services.prompt_builder import BudgetExceeded, PromptBuilder, PromptPayload

logger = logging.getLogger(__name__)

_RETRIEVAL_KINDS: dict[IntentCategory, frozenset[KnowledgeKind]] = {
    IntentCategory.QUESTION: frozenset({KnowledgeKind.NODE_TYPE, KnowledgeKind.EXAMPLE}),
    IntentCategory.CREATE: frozenset({KnowledgeKind.EXAMPLE, KnowledgeKind.PATTERN}),
}


class NoActiveHistoryKey(RuntimeError):
    """Raised when assembling without an explicit or active history key."""


class ContextAssembler:
    """Builds the bounded prompt payload for one conversation turn.

    Inclusion per intent:

    ========  ============  =====================  ====================  ==========================
    category  history       catalog                workspace             retrieval
    ========  ============  =====================  ====================  ==========================
    question  bounded view  via retrieval only     omitted               top-K node types/examples
    create    bounded view  full (cached)          summary (cached)      top-K examples/patterns
    update    bounded view  full (cached)          full, uncompressed    none
    ========  ============  =====================  ====================  ==========================

    Over budget, sections shrink in a fixed order: retrieved items (lowest
    score first), catalog detail (compact, then omitted), history summary
    depth, then unflagged raw history oldest-first. The utterance and any
    message flagged as a flow artifact or error are never removed; if they
    alone exceed the budget the payload carries ``budget_exceeded``.
    """

    def __init__(
        self,
        *,
        history_store: HistoryStore,
        fragment_cache: FragmentCache,
        knowledge_index: KnowledgeIndex,
        catalog_source: CatalogSource,
        workspace_source: WorkspaceSource,
        classifier: Optional[IntentClassifier] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        retrieval_top_k: int = 5,
        default_budget: int = 6000,
        history_max_recent: Optional[int] = None,
        active_key: Optional[HistoryKey] = None,
    ) -> None:
        self.history_store = history_store
        self.fragment_cache = fragment_cache
        self.knowledge_index = knowledge_index
        self.catalog_source = catalog_source
        self.workspace_source = workspace_source
        self.classifier = classifier or IntentClassifier()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._retrieval_top_k = max(0, retrieval_top_k)
        self._default_budget = max(1, default_budget)
        self._history_max_recent = history_max_recent
        self._active_key = active_key

    @property
    def active_key(self) -> Optional[HistoryKey]:
        return self._active_key

    async def switch_key(self, new_key: HistoryKey) -> HistoryRecord:
        """Make `new_key` the active conversation, flushing the previous one."""

        record = await self.history_store.switch(self._active_key, new_key)
        self._active_key = new_key
        return record

    def catalog_changed(self) -> None:
        """Mutation event: the domain catalog changed."""

        self.fragment_cache.invalidate(CATALOG_SCOPE)

    def workspace_changed(self) -> None:
        """Mutation event: the user's workspace changed."""

        self.fragment_cache.invalidate(WORKSPACE_SCOPE)

    async def classify(
        self, utterance: str, *, key: Optional[HistoryKey] = None
    ) -> IntentDecision:
        history_key = self._resolve_key(key)
        view = await self.history_store.view(history_key, self._history_max_recent)
        return self.classifier.decide(
            utterance,
            view.recent,
            workspace_item_count=len(self.workspace_source.list_items()),
        )

    async def commit_turn(
        self,
        user_message: Message,
        assistant_message: Optional[Message] = None,
        *,
        key: Optional[HistoryKey] = None,
    ) -> None:
        """Record a completed turn; callers skip this for discarded turns."""

        history_key = self._resolve_key(key)
        await self.history_store.append(history_key, user_message)
        if assistant_message is not None:
            await self.history_store.append(history_key, assistant_message)

    async def assemble(
        self,
        utterance: str,
        category: Optional[IntentCategory] = None,
        budget: Optional[int] = None,
        *,
        key: Optional[HistoryKey] = None,
    ) -> PromptPayload:
        """Assemble the prompt payload for one turn.

        Raises CacheBuildFailure when a fragment builder fails and ValueError
        for a non-positive budget. Embedding failures only empty the retrieval
        section.
        """

        history_key = self._resolve_key(key)
        if budget is not None and budget <= 0:
            raise ValueError("budget must be positive")
        token_budget = self._default_budget if budget is None else budget

        # Collaborator snapshots are taken once, up front, together with the
        # cache generations they belong to.
        generations = {
            scope: self.fragment_cache.generation(scope)
            for scope in (CATALOG_SCOPE, WORKSPACE_SCOPE)
        }
        catalog_entries = list(self.catalog_source.list_entries())
        workspace_items = list(self.workspace_source.list_items())
        view = await self.history_store.view(history_key, self._history_max_recent)

        ambiguous = False
        if category is None:
            decision = self.classifier.decide(
                utterance, view.recent, workspace_item_count=len(workspace_items)
            )
            category, ambiguous = decision.category, decision.ambiguous

        catalog_fragment, workspace_fragment = self._build_fragments(
            category, catalog_entries, workspace_items, generations
        )
        retrieval, degraded = await self._retrieve(category, utterance)

        payload = PromptPayload(
            category=category,
            utterance=utterance,
            budget=token_budget,
            history_summary=view.summary,
            history=list(view.recent),
            catalog_fragment=catalog_fragment,
            workspace_fragment=workspace_fragment,
            retrieval=retrieval,
            retrieval_degraded=degraded,
            classification_ambiguous=ambiguous,
        )
        self._enforce_budget(payload, catalog_entries, generations)
        logger.info(
            "Assembled %s context tokens=%d budget=%d retrieval=%d truncations=%s",
            category.value,
            payload.estimated_tokens,
            token_budget,
            len(payload.retrieval),
            ",".join(payload.truncations) or "none",
        )
        return payload

    def _resolve_key(self, key: Optional[HistoryKey]) -> HistoryKey:
        resolved = key or self._active_key
        if resolved is None:
            raise NoActiveHistoryKey("No history key given and no active key set")
        return resolved

    def _build_fragments(
        self,
        category: IntentCategory,
        catalog_entries: Sequence[CatalogEntry],
        workspace_items: Sequence[WorkspaceItem],
        generations: dict[str, int],
    ) -> tuple[Optional[str], Optional[str]]:
        if category is IntentCategory.QUESTION:
            return None, None

        catalog_fragment = self.fragment_cache.get_or_build(
            CATALOG_SCOPE,
            catalog_inputs_hash(catalog_entries),
            lambda: render_catalog_full(catalog_entries),
            variant="full",
            generation=generations[CATALOG_SCOPE],
        )
        if category is IntentCategory.CREATE:
            workspace_fragment = self.fragment_cache.get_or_build(
                WORKSPACE_SCOPE,
                workspace_inputs_hash(workspace_items),
                lambda: render_workspace_summary(workspace_items),
                variant="summary",
                generation=generations[WORKSPACE_SCOPE],
            )
        else:
            workspace_fragment = render_workspace_full(workspace_items)
        return catalog_fragment, workspace_fragment

    async def _retrieve(
        self, category: IntentCategory, utterance: str
    ) -> tuple[RetrievalResult, bool]:
        kinds = _RETRIEVAL_KINDS.get(category)
        if not kinds or self._retrieval_top_k <= 0:
            return RetrievalResult(), False
        try:
            result = await self.knowledge_index.retrieve(
                utterance, self._retrieval_top_k, KnowledgeFilter(kinds=kinds)
            )
        except EmbeddingUnavailable as exc:
            logger.warning("Retrieval skipped because query embedding failed: %s", exc)
            return RetrievalResult(), True
        return result, False

    def _enforce_budget(
        self,
        payload: PromptPayload,
        catalog_entries: Sequence[CatalogEntry],
        generations: dict[str, int],
    ) -> None:
        estimate = self._estimate(payload)

        while estimate > payload.budget and len(payload.retrieval):
            payload.retrieval = payload.retrieval.truncated(len(payload.retrieval) - 1)
            payload.truncations.append("retrieval")
            estimate = self._estimate(payload)

        if estimate > payload.budget and payload.catalog_fragment is not None:
            compact = self.fragment_cache.get_or_build(
                CATALOG_SCOPE,
                catalog_inputs_hash(catalog_entries),
                lambda: render_catalog_compact(catalog_entries),
                variant="compact",
                generation=generations[CATALOG_SCOPE],
            )
            if compact != payload.catalog_fragment:
                payload.catalog_fragment = compact
                payload.truncations.append("catalog_compact")
                estimate = self._estimate(payload)
            if estimate > payload.budget:
                payload.catalog_fragment = None
                payload.truncations.append("catalog_omitted")
                estimate = self._estimate(payload)

        while estimate > payload.budget and payload.history_summary is not None:
            summary = payload.history_summary
            evictable = next((fact for fact in summary.facts if fact.kind == "decision"), None)
            if evictable is not None:
                payload.history_summary = summary.without_facts({evictable.message_id})
            elif not summary.facts:
                payload.history_summary = None
            else:
                break
            payload.truncations.append("summary")
            estimate = self._estimate(payload)

        while estimate > payload.budget:
            index = next(
                (i for i, message in enumerate(payload.history) if not message.flags.protected),
                None,
            )
            if index is None:
                break
            payload.history = payload.history[:index] + payload.history[index + 1 :]
            payload.truncations.append("history")
            estimate = self._estimate(payload)

        payload.estimated_tokens = estimate
        if estimate > payload.budget:
            protected = [message.id for message in payload.history if message.flags.protected]
            if payload.history_summary is not None:
                protected.extend(fact.message_id for fact in payload.history_summary.facts)
            payload.budget_exceeded = BudgetExceeded(
                budget=payload.budget,
                estimated_tokens=estimate,
                protected_message_ids=tuple(protected),
            )
            logger.warning(
                "Prompt over budget after truncation: %d > %d tokens", estimate, payload.budget
            )

    def _estimate(self, payload: PromptPayload) -> int:
        return self.prompt_builder.estimate_payload_tokens(payload)


def create_history_persistence(
    settings: Settings, sessionmaker: Optional[async_sessionmaker[AsyncSession]]
) -> HistoryPersistence:
    mode = settings.history_persistence.strip().lower()
    if mode == "sqlite" and sessionmaker is not None:
        return SQLHistoryPersistence(sessionmaker)
    if mode not in {"sqlite", "off"}:
        logger.warning("Unknown HISTORY_PERSISTENCE=%s; fallback to off", mode)
    return NullHistoryPersistence()


def create_context_assembler(
    *,
    settings: Settings,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    embedder: Optional[Embedder] = None,
    catalog_source: Optional[CatalogSource] = None,
    workspace_source: Optional[WorkspaceSource] = None,
) -> ContextAssembler:
    """Wire one instance of every pipeline component."""

    history_store = HistoryStore(
        create_history_persistence(settings, sessionmaker),
        max_recent=settings.history_max_recent,
        summary_slack=settings.history_summary_slack,
        max_summary_facts=settings.history_summary_max_facts,
    )
    return ContextAssembler(
        history_store=history_store,
        fragment_cache=FragmentCache(),
        knowledge_index=KnowledgeIndex(embedder or create_embedder(settings)),
        catalog_source=catalog_source or StaticCatalogSource(),
        workspace_source=workspace_source or InMemoryWorkspaceSource(),
        retrieval_top_k=settings.retrieval_top_k,
        default_budget=settings.prompt_token_budget,
        history_max_recent=settings.history_max_recent,
    )


def get_context_assembler(request: Request) -> ContextAssembler:
    """Dependency to access the app's context assembler."""

    return request.app.state.assembler
