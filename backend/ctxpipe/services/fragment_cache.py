from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CATALOG_SCOPE = "catalog"
WORKSPACE_SCOPE = "workspace"


class CacheBuildFailure(RuntimeError):
    """Raised when a fragment builder fails; nothing is cached."""

    def __init__(self, scope: str, variant: str, message: str) -> None:
        super().__init__(message)
        self.scope = scope
        self.variant = variant


@dataclass(frozen=True)
class FragmentCacheEntry(Generic[T]):
    """One memoized fragment; replaced wholesale, never mutated."""

    key: str
    payload: T
    produced_from_hash: str


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    invalidations: int = 0


def stable_inputs_hash(identifiers: Iterable[str]) -> str:
    """Order-independent content address for a set of identifiers.

    Duplicates collapse; the digest is sha256 over the sorted JSON list.
    """

    canonical = json.dumps(sorted({str(value) for value in identifiers}), separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FragmentCache:
    """Memoizes derived prompt fragments by a hash of their inputs.

    Entries are grouped by scope (``catalog``, ``workspace``); several variants
    of a fragment may live in one scope. A lookup only hits when the caller's
    freshly computed inputs hash equals the entry's ``produced_from_hash``, so a
    missed invalidation still cannot return stale content.

    Every invalidation bumps the scope's generation. A caller that read the
    generation before taking its input snapshot passes it back to
    `get_or_build`; once the scope has moved on, the caller gets a payload
    built from its own snapshot and nothing is read from or written to the
    cache for it.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], FragmentCacheEntry[Any]] = {}
        self._generations: dict[str, int] = {}
        self.stats = CacheStats()

    def get_or_build(
        self,
        scope: str,
        inputs_hash: str,
        builder: Callable[[], T],
        *,
        variant: str = "default",
        generation: Optional[int] = None,
    ) -> T:
        slot = (scope, variant)
        stale = generation is not None and generation != self.generation(scope)
        # Entries are immutable, so one read is a coherent snapshot even if an
        # invalidation lands while the caller is still using the payload.
        entry = None if stale else self._entries.get(slot)
        if entry is not None and entry.produced_from_hash == inputs_hash:
            self.stats.hits += 1
            return entry.payload

        self.stats.misses += 1
        try:
            payload = builder()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Fragment build failed scope=%s variant=%s: %s", scope, variant, exc)
            raise CacheBuildFailure(
                scope, variant, f"Failed to build {scope}/{variant} fragment"
            ) from exc

        if stale:
            logger.debug(
                "Fragment not cached; scope=%s invalidated since generation %d", scope, generation
            )
            return payload

        self._entries[slot] = FragmentCacheEntry(
            key=f"{scope}:{variant}:{inputs_hash}",
            payload=payload,
            produced_from_hash=inputs_hash,
        )
        return payload

    def invalidate(self, scope: str) -> int:
        """Drop every entry in `scope`; returns the number removed."""

        doomed = [slot for slot in self._entries if slot[0] == scope]
        for slot in doomed:
            del self._entries[slot]
        self._generations[scope] = self.generation(scope) + 1
        self.stats.invalidations += 1
        logger.debug("Fragment cache invalidated scope=%s dropped=%d", scope, len(doomed))
        return len(doomed)

    def generation(self, scope: str) -> int:
        return self._generations.get(scope, 0)

    def peek(self, scope: str, variant: str = "default") -> FragmentCacheEntry[Any] | None:
        return self._entries.get((scope, variant))

    def __len__(self) -> int:
        return len(self._entries)
