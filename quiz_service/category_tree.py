"""Category tree materialization over a flat parent-pointer set.

All functions here are pure: they take the flat list of categories read
from the store and never touch the database. A parent pointer that loops
back on itself is a corrupted store, so every walk tracks the nodes it has
visited and raises ``CategoryCycleError`` instead of spinning forever.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from shared.errors import CategoryCycleError, NotFoundError

PATH_SEPARATOR = "/"


@dataclass
class CategoryNode:
    id: str
    name: str
    parent_id: Optional[str] = None
    full_path: str = ""
    children: list["CategoryNode"] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "fullPath": self.full_path,
            "children": [c.as_dict() for c in self.children],
        }


def _index(categories: Iterable) -> dict[str, object]:
    return {c.id: c for c in categories}


def _ancestry(category_id: str, by_id: dict) -> list:
    """Nodes from ``category_id`` up to its root, nearest first."""
    chain = []
    seen: set[str] = set()
    current = by_id.get(category_id)
    while current is not None:
        if current.id in seen:
            raise CategoryCycleError(f"Category parent chain loops at '{current.id}'")
        seen.add(current.id)
        chain.append(current)
        parent_id = current.parent_id
        current = by_id.get(parent_id) if parent_id else None
    return chain


def get_full_category_path(category_id: str, categories: Iterable) -> str:
    by_id = _index(categories)
    if category_id not in by_id:
        raise NotFoundError(f"Category '{category_id}' not found.")
    chain = _ancestry(category_id, by_id)
    return PATH_SEPARATOR.join(c.name for c in reversed(chain))


def build_category_tree(categories: Iterable) -> list[CategoryNode]:
    """Link a flat category set into a forest.

    A category whose parent does not resolve becomes a root. Every input
    node appears exactly once in the output, each with ``full_path`` set.
    """
    source = list(categories)
    by_id = _index(source)
    nodes = {c.id: CategoryNode(id=c.id, name=c.name, parent_id=c.parent_id) for c in source}

    roots: list[CategoryNode] = []
    for c in source:
        node = nodes[c.id]
        chain = _ancestry(c.id, by_id)
        node.full_path = PATH_SEPARATOR.join(n.name for n in reversed(chain))
        parent = nodes.get(c.parent_id) if c.parent_id else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

    for node in nodes.values():
        node.children.sort(key=lambda n: n.name.lower())
    roots.sort(key=lambda n: n.name.lower())
    return roots


def get_descendant_category_ids(category_id: str, categories: Iterable) -> list[str]:
    """All transitive children of ``category_id``, breadth first, excluding itself."""
    children: dict[str, list[str]] = {}
    for c in categories:
        if c.parent_id:
            children.setdefault(c.parent_id, []).append(c.id)

    out: list[str] = []
    visited = {category_id}
    queue = list(children.get(category_id, []))
    while queue:
        current = queue.pop(0)
        if current in visited:
            raise CategoryCycleError(f"Category '{current}' is reachable from itself")
        visited.add(current)
        out.append(current)
        queue.extend(children.get(current, []))
    return out
