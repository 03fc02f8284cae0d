from __future__ import annotations

import hashlib
import json
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from ctxpipe.services.fragment_cache import stable_inputs_hash


@dataclass(frozen=True)
class CatalogEntry:
    """One entry of the large domain catalog (e.g. a node type)."""

    id: str
    name: str
    category: str = "general"
    description: str = ""


@dataclass(frozen=True)
class WorkspaceItem:
    """One item currently present in the user's workspace."""

    id: str
    type: str
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def revision(self) -> str:
        canonical = json.dumps(self.parameters, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


class CatalogSource(Protocol):
    def list_entries(self) -> Sequence[CatalogEntry]:
        """Current catalog entries."""


class WorkspaceSource(Protocol):
    def list_items(self) -> Sequence[WorkspaceItem]:
        """Current workspace items."""


class StaticCatalogSource:
    """Catalog held in memory, optionally loaded from a JSON feed."""

    def __init__(self, entries: Iterable[CatalogEntry] = ()) -> None:
        self._entries = list(entries)

    def list_entries(self) -> Sequence[CatalogEntry]:
        return list(self._entries)

    def replace(self, entries: Iterable[CatalogEntry]) -> None:
        self._entries = list(entries)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticCatalogSource":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError("Catalog feed must be a JSON array")
        entries = [
            CatalogEntry(
                id=str(row["id"]),
                name=str(row.get("name") or row["id"]),
                category=str(row.get("category") or "general"),
                description=" ".join(str(row.get("description") or "").split()),
            )
            for row in raw
            if isinstance(row, dict) and row.get("id")
        ]
        return cls(entries)


class InMemoryWorkspaceSource:
    def __init__(self, items: Iterable[WorkspaceItem] = ()) -> None:
        self._items = list(items)

    def list_items(self) -> Sequence[WorkspaceItem]:
        return list(self._items)

    def replace(self, items: Iterable[WorkspaceItem]) -> None:
        self._items = list(items)


def catalog_inputs_hash(entries: Iterable[CatalogEntry]) -> str:
    """Content address of the catalog fragment: the sorted set of entry ids."""

    return stable_inputs_hash(entry.id for entry in entries)


def workspace_inputs_hash(items: Iterable[WorkspaceItem]) -> str:
    """Content address of workspace fragments: sorted ``id@revision`` pairs.

    The revision is a digest of the item's parameters, so editing an item
    changes the hash even when the set of ids stays the same.
    """

    return stable_inputs_hash(f"{item.id}@{item.revision}" for item in items)


def render_catalog_full(entries: Sequence[CatalogEntry]) -> str:
    if not entries:
        return "(catalog is empty)"
    grouped = _group_by_category(entries)
    lines: list[str] = []
    for category, rows in grouped.items():
        lines.append(f"{category}:")
        for entry in rows:
            description = f": {entry.description}" if entry.description else ""
            lines.append(f"- {entry.name} ({entry.id}){description}")
    return "\n".join(lines)


def render_catalog_compact(entries: Sequence[CatalogEntry]) -> str:
    """Names only, one line per category; used when shrinking to budget."""

    if not entries:
        return "(catalog is empty)"
    grouped = _group_by_category(entries)
    return "\n".join(
        f"{category}: {', '.join(entry.name for entry in rows)}"
        for category, rows in grouped.items()
    )


def render_workspace_summary(items: Sequence[WorkspaceItem]) -> str:
    if not items:
        return "Workspace is empty."
    counts = Counter(item.type for item in items)
    type_text = ", ".join(f"{name} x{count}" for name, count in sorted(counts.items()))
    lines = [f"Workspace has {len(items)} items ({type_text}):"]
    lines.extend(f"- {item.name} [{item.type}]" for item in items)
    return "\n".join(lines)


def render_workspace_full(items: Sequence[WorkspaceItem]) -> str:
    if not items:
        return "Workspace is empty."
    rows = [
        {"id": item.id, "type": item.type, "name": item.name, "parameters": item.parameters}
        for item in items
    ]
    return json.dumps(rows, ensure_ascii=False, sort_keys=True, indent=2, default=str)


def _group_by_category(entries: Sequence[CatalogEntry]) -> "OrderedDict[str, list[CatalogEntry]]":
    grouped: "OrderedDict[str, list[CatalogEntry]]" = OrderedDict()
    for entry in sorted(entries, key=lambda row: (row.category, row.name, row.id)):
        grouped.setdefault(entry.category, []).append(entry)
    return grouped
